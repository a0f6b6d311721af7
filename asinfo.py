"""
This module provides the Table, Route, AsInfo and DataModel classes.

A DataModel holds, per address family, the routes and the AS-level topology
derived from the most recent routing table snapshot of a router.
"""

from __future__ import annotations
import collections.abc
import ipaddress
import logging
import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


class SnapshotError(ValueError):
    """A decoded snapshot does not have the expected shape."""


class AsPathError(SnapshotError):
    """An AS path contains a token that is neither an ASN nor an AS_SET."""


class Family(Enum):
    """An address family, valued by its IP version."""
    IPV4 = 4
    IPV6 = 6


class _Index:
    """
    A secondary index of a Table: maps values to the items holding them.

    Buckets and the reverse map are keyed by id(item), so items need not be
    hashable and equal items stay distinct. The reverse map remembers the
    value each item was registered under, so items can be dropped without
    re-reading the (possibly changed) field.
    """

    def __init__(self) -> None:
        self._buckets: Dict[Any, Dict[int, Any]] = {}
        self._reverse: Dict[int, Any] = {}

    def add(self, value: Any, item: Any) -> None:
        key = id(item)
        if key in self._reverse:
            if self._reverse[key] == value:
                return
            self.remove(item)
        self._buckets.setdefault(value, {})[key] = item
        self._reverse[key] = value

    def remove(self, item: Any) -> None:
        key = id(item)
        if key not in self._reverse:
            return
        value = self._reverse.pop(key)
        bucket = self._buckets.get(value)
        if bucket is None:
            return
        bucket.pop(key, None)
        if len(bucket) == 0:
            del self._buckets[value]

    def find(self, value: Any) -> Sequence[Any]:
        bucket = self._buckets.get(value)
        if bucket is None:
            return ()
        return tuple(bucket.values())


class Table:
    """
    An owning store of items with optional secondary indices.

    Items are tracked by identity. Every index key names an attribute (or a
    key, for mapping items); an item is registered under the value it has
    when the item is added. Changing that value afterwards without removing
    and re-adding the item leaves the indices stale.
    """

    def __init__(self, index_keys: Iterable[str] = ()) -> None:
        self._index_keys = [key for key in index_keys if isinstance(key, str)]
        self._indices = {key: _Index() for key in self._index_keys}
        self._items: Dict[int, Any] = {}

    @staticmethod
    def _field(item: Any, key: str) -> Any:
        if isinstance(item, collections.abc.Mapping):
            return item.get(key)
        return getattr(item, key, None)

    def add(self, item: Any) -> None:
        """Add item, registering it in every index whose field it defines."""
        for key in self._index_keys:
            value = self._field(item, key)
            if value is not None:
                self._indices[key].add(value, item)
            else:
                self._indices[key].remove(item)
        self._items[id(item)] = item

    def remove(self, item: Any) -> None:
        """Remove item from the table and all its indices."""
        for key in self._index_keys:
            self._indices[key].remove(item)
        self._items.pop(id(item), None)

    def find(self, key: str, value: Any) -> Sequence[Any]:
        """Return the items registered under value for index key, oldest first."""
        index = self._indices.get(key)
        if index is None:
            return ()
        return index.find(value)

    def find_and_remove(self, key: str, value: Any) -> None:
        """Remove every item find(key, value) returns."""
        for item in self.find(key, value):
            self.remove(item)

    @property
    def items(self) -> List[Any]:
        """A snapshot of all items in the table."""
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item: Any) -> bool:
        return self._items.get(id(item)) is item


def is_special_asn(asn: int) -> bool:
    """Determine whether asn is reserved, private or a placeholder (RFC6793, RFC5398, RFC6996)."""
    if asn == 0:
        return True
    if asn == 23456:
        return True
    if 64496 <= asn <= 131071:
        return True
    if asn >= 4200000000:
        return True
    return False


_SPECIAL_NETWORKS = [ipaddress.ip_network(net) for net in [
    '0.0.0.0/8',
    '10.0.0.0/8',
    '100.64.0.0/10',
    '127.0.0.0/8',
    '169.254.0.0/16',
    '172.16.0.0/12',
    '192.0.0.0/24',
    '192.0.2.0/24',
    '192.88.99.0/24',
    '192.168.0.0/16',
    '198.18.0.0/15',
    '198.51.100.0/24',
    '203.0.113.0/24',
    '224.0.0.0/4',
    '240.0.0.0/4',
    '::/128',
    '::1/128',
    '::ffff:0:0/96',
    '::ffff:0:0:0/96',
    '64:ff9b::/96',
    '64:ff9b:1::/48',
    '100::/64',
    '2001:20::/28',
    '2001:db8::/32',
    '2002::/16',
    'fc00::/7',
    'fe80::/10',
    'ff00::/8',
    '2001:2::/48',
]]


def is_special_prefix(network: str) -> bool:
    """Determine whether network lies within a reserved, private or documentation range."""
    try:
        net = ipaddress.ip_network(network, strict=False)
    except ValueError:
        return False
    return any(net.version == special.version and net.subnet_of(special) for special in _SPECIAL_NETWORKS)


_ASN_PATTERN = re.compile(r"^[0-9]+$")
_AS_SET_PATTERN = re.compile(r"^\{[0-9]+(,[0-9]+)*\}$")


def _clean_token(token: str) -> str:
    """Map one path token to its cleaned form, or '' if it is to be dropped."""
    if _ASN_PATTERN.match(token):
        if is_special_asn(int(token)):
            return ''
        return token
    if _AS_SET_PATTERN.match(token):
        members = sorted(asn for asn in (int(x) for x in token[1:-1].split(',')) if not is_special_asn(asn))
        if len(members) == 0:
            return ''
        if len(members) == 1:
            return str(members[0])
        as_set = '{%s}' % ','.join(str(asn) for asn in members)
        logger.info("AS_SET %s in path kept as %s", token, as_set)
        return as_set
    raise AsPathError("invalid AS path token '%s'" % token)


def normalize_as_path(path: str) -> Tuple[str, ...]:
    """
    Turn a space-separated AS path into its cleaned token sequence.

    Reserved ASNs are dropped, AS_SETs are filtered and sorted (collapsing to
    a plain ASN or disappearing when fewer than two members survive), and a
    run of repeated tokens at the very end of the path is reduced to one.
    Repeats elsewhere in the path are kept.

    Examples:
    - "100 {300,200}"    -> ("100", "{200,300}")
    - "100 {0,23456}"    -> ("100",)
    - "100 200 300 300"  -> ("100", "200", "300")
    - "100 100 200"      -> ("100", "100", "200")
    """
    tokens = [_clean_token(token) for token in path.split(' ') if len(token) > 0]
    cleaned = [token for token in tokens if len(token) > 0]
    while len(cleaned) > 1 and cleaned[-1] == cleaned[-2]:
        cleaned.pop()
    return tuple(cleaned)


def origin_of(as_path: Sequence[str], local_asn: int) -> str:
    """The origin token of a cleaned path; the local ASN when the path is empty."""
    if len(as_path) == 0:
        return str(local_asn)
    return as_path[-1]


class RouterInfo:
    """Identity of the local router for one address family."""

    def __init__(self, router_id: str, local_asn: int) -> None:
        self.router_id = router_id
        self.local_asn = local_asn

    def to_dict(self) -> Dict[str, Any]:
        return {"routerId": self.router_id, "localAsn": self.local_asn}

    def __repr__(self) -> str:
        return "RouterInfo(%r, %i)" % (self.router_id, self.local_asn)


class Route:
    """
    A route as observed in a snapshot.

    The AS path is the cleaned token tuple; origin_asn is its last token, or
    the local ASN for locally originated routes. Instances compare by identity
    so they can live in a Table.
    """

    def __init__(self, ip_version: int, prefix: str, as_path: Sequence[str], origin_asn: str) -> None:
        self.ip_version = ip_version
        self.prefix = prefix
        self.as_path = tuple(as_path)
        self.origin_asn = origin_asn

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ipVersion": self.ip_version,
            "prefix": self.prefix,
            "asPath": list(self.as_path),
            "originAsn": self.origin_asn,
        }

    def __str__(self) -> str:
        return "%s AS%s [%s]" % (self.prefix, self.origin_asn, " ".join(self.as_path))

    def __repr__(self) -> str:
        return "Route(%i, %r, %r, %r)" % (self.ip_version, self.prefix, self.as_path, self.origin_asn)


class AsInfo:
    """
    What one snapshot reveals about an AS: the prefixes it originates and the
    ASes seen next to it in AS paths. Both are insertion-ordered and free of
    duplicates; an AS is never its own neighbor.
    """

    def __init__(self, asn: str) -> None:
        self.asn = asn
        self._prefixes: Dict[str, None] = {}
        self._neighbor_asns: Dict[str, None] = {}

    @property
    def prefixes(self) -> Tuple[str, ...]:
        return tuple(self._prefixes)

    @property
    def neighbor_asns(self) -> Tuple[str, ...]:
        return tuple(self._neighbor_asns)

    def add_prefix(self, prefix: str) -> None:
        self._prefixes.setdefault(prefix, None)

    def add_neighbor(self, asn: str) -> None:
        if asn != self.asn:
            self._neighbor_asns.setdefault(asn, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asn": self.asn,
            "prefixes": list(self._prefixes),
            "neighborAsns": list(self._neighbor_asns),
        }

    def __repr__(self) -> str:
        return "AsInfo(%r, prefixes=%r, neighbor_asns=%r)" % (self.asn, self.prefixes, self.neighbor_asns)


class FamilyData:
    """The router identity, Route table and AsInfo table built from one snapshot."""

    def __init__(self, router_info: RouterInfo, routes: Table, as_info: Table) -> None:
        self.router_info = router_info
        self.routes = routes
        self.as_info = as_info


def _require(record: Mapping[str, Any], key: str, kind: Union[type, Tuple[type, ...]], where: str) -> Any:
    """Fetch record[key], raising SnapshotError unless it has the given type."""
    if key not in record:
        raise SnapshotError("missing '%s' in %s" % (key, where))
    value = record[key]
    # bool is an int subclass, but never a valid ASN or prefix length.
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is int):
        raise SnapshotError("'%s' in %s has unexpected type %s" % (key, where, type(value).__name__))
    return value


def _check_snapshot(snapshot: Any) -> Tuple[int, str, Mapping[str, Any]]:
    """Validate the top-level shape of a decoded snapshot."""
    if not isinstance(snapshot, collections.abc.Mapping):
        raise SnapshotError("snapshot is a %s, not an object" % type(snapshot).__name__)
    local_asn = _require(snapshot, 'localAS', int, "snapshot")
    router_id = _require(snapshot, 'routerId', str, "snapshot")
    routes = _require(snapshot, 'routes', collections.abc.Mapping, "snapshot")
    for prefix, entries in routes.items():
        if isinstance(entries, (str, bytes)) or not isinstance(entries, collections.abc.Sequence):
            raise SnapshotError("routes for %s are not a list" % prefix)
        for entry in entries:
            if not isinstance(entry, collections.abc.Mapping):
                raise SnapshotError("route entry for %s is not an object" % prefix)
    return local_asn, router_id, routes


def _as_info_for(as_info: Table, asn: str) -> AsInfo:
    """Find the AsInfo for asn, creating it if needed."""
    found = as_info.find('asn', asn)
    if len(found) > 0:
        return found[0]
    item = AsInfo(asn)
    as_info.add(item)
    return item


def build_family(snapshot: Any, family: Union[Family, int], ignore_default_routes: bool = False,
                 ignore_special_prefixes: bool = False) -> FamilyData:
    """
    Build fresh Route and AsInfo tables from one decoded snapshot.

    Args:
        snapshot: A decoded `show bgp ... json` object with localAS, routerId
                  and routes (prefix -> list of route entries).
        family: The address family the snapshot belongs to.
        ignore_default_routes: Skip entries with prefixLen 0.
        ignore_special_prefixes: Skip entries for reserved networks.
    Returns:
        A FamilyData with the router identity and both tables.
    Raises:
        SnapshotError: if the snapshot or one of its entries is malformed.
    """
    family = Family(family)
    local_asn, router_id, bgp_routes = _check_snapshot(snapshot)
    local_token = str(local_asn)

    routes = Table(['prefix', 'origin_asn', 'as_path'])
    as_info = Table(['asn'])
    as_info.add(AsInfo(local_token))

    skipped = 0
    for prefix, entries in bgp_routes.items():
        for entry in entries:
            where = "route entry for %s" % prefix
            if ignore_default_routes and _require(entry, 'prefixLen', int, where) == 0:
                skipped += 1
                continue
            if not entry.get('valid', False):
                skipped += 1
                continue
            network = _require(entry, 'network', str, where)
            if ignore_special_prefixes and is_special_prefix(network):
                logger.debug("Skipping special prefix %s", network)
                skipped += 1
                continue
            as_path = normalize_as_path(_require(entry, 'path', str, where))
            origin_asn = origin_of(as_path, local_asn)

            if not any(r.as_path == as_path and r.origin_asn == origin_asn for r in routes.find('prefix', network)):
                routes.add(Route(family.value, network, as_path, origin_asn))

            _as_info_for(as_info, origin_asn).add_prefix(network)

            adjacency = [local_token] + list(as_path)
            for i, asn in enumerate(adjacency):
                item = _as_info_for(as_info, asn)
                if i > 0:
                    item.add_neighbor(adjacency[i - 1])
                if i + 1 < len(adjacency):
                    item.add_neighbor(adjacency[i + 1])

    logger.info("%i routes, %i ASNs for IPv%i (%i entries skipped)", len(routes), len(as_info), family.value, skipped)
    return FamilyData(RouterInfo(router_id, local_asn), routes, as_info)


class DataModel:
    """
    Routes and AS topology for IPv4 and IPv6, each replaced as a whole by
    every successful import for that family.

    Imports are not locked; callers run at most one import per family at a
    time. A failed import leaves the previous data in place.
    """

    def __init__(self, ignore_default_routes: bool = False, ignore_special_prefixes: bool = False) -> None:
        self.ignore_default_routes = ignore_default_routes
        self.ignore_special_prefixes = ignore_special_prefixes
        self._families: Dict[Family, FamilyData] = {}

    def import_family_data(self, family: Union[Family, int], snapshot: Any) -> None:
        """Rebuild the data for family from a decoded snapshot."""
        family = Family(family)
        data = build_family(snapshot, family, ignore_default_routes=self.ignore_default_routes,
                            ignore_special_prefixes=self.ignore_special_prefixes)
        self._families[family] = data

    def router_info(self, family: Union[Family, int]) -> Optional[RouterInfo]:
        data = self._families.get(Family(family))
        if data is None:
            return None
        return data.router_info

    def routes(self, family: Union[Family, int]) -> List[Route]:
        data = self._families.get(Family(family))
        if data is None:
            return []
        return data.routes.items

    def as_info(self, family: Union[Family, int]) -> List[AsInfo]:
        data = self._families.get(Family(family))
        if data is None:
            return []
        return data.as_info.items

    def find_as_info(self, family: Union[Family, int], asn: Union[str, int]) -> Optional[AsInfo]:
        """Look up the AsInfo for one ASN token."""
        data = self._families.get(Family(family))
        if data is None:
            return None
        found = data.as_info.find('asn', str(asn))
        return found[0] if len(found) > 0 else None

    def find_routes(self, family: Union[Family, int], prefix: str) -> List[Route]:
        """All routes for one prefix."""
        data = self._families.get(Family(family))
        if data is None:
            return []
        return list(data.routes.find('prefix', prefix))
