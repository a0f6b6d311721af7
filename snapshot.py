# Copyright (c) 2023 The asinfo developers
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
Reading routing table snapshots and writing the derived AS information.

Snapshots are the JSON output of `show bgp ipv4 json` / `show bgp ipv6 json`,
or MRT RIB dumps converted to the same shape.
"""

from __future__ import annotations
import json
import logging
import os
import os.path
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from asinfo import AsInfo, DataModel, Family, Route, SnapshotError

logger = logging.getLogger(__name__)


def decode_snapshot(text: Union[str, bytes]) -> Any:
    """Decode snapshot JSON text."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as err:
        raise SnapshotError("invalid JSON: %s" % err) from err


def load_snapshot(path: str) -> Any:
    """Read and decode the snapshot file at path."""
    try:
        with open(path, "rb") as snapshot_file:
            contents = snapshot_file.read()
    except OSError as err:
        raise SnapshotError("snapshot file '%s' cannot be read: %s" % (path, err.strerror)) from err
    try:
        return decode_snapshot(contents)
    except SnapshotError as err:
        raise SnapshotError("snapshot file '%s': %s" % (path, err)) from err


def import_snapshot_file(model: DataModel, family: Union[Family, int], path: str) -> None:
    """Load the snapshot at path and import it into model."""
    snapshot = load_snapshot(path)
    try:
        model.import_family_data(family, snapshot)
    except SnapshotError as err:
        raise SnapshotError("snapshot file '%s': %s" % (path, err)) from err


def as_info_to_json(items: Iterable[AsInfo]) -> str:
    return json.dumps([item.to_dict() for item in items], indent=2)


def routes_to_json(items: Iterable[Route]) -> str:
    return json.dumps([item.to_dict() for item in items], indent=2)


def write_json_atomic(path: str, text: str) -> None:
    """Write text to path through a temporary file, so readers never see a partial file."""
    part = path + ".part"
    with open(part, "w", encoding="utf-8") as out_file:
        out_file.write(text)
        out_file.write("\n")
    os.replace(part, path)


def _signature(path: str) -> Optional[Tuple[int, int, int]]:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


class FileWatcher:
    """
    Calls a callback whenever a file appears or changes.

    Changes are detected by polling the file's inode, modification time and
    size, so a file replaced by rename is noticed like one written in place.
    The first poll fires if the file already exists.
    """

    def __init__(self, path: str, callback: Callable[[str], None]) -> None:
        self.path = path
        self.callback = callback
        self._last: Optional[Tuple[int, int, int]] = None

    def poll(self) -> bool:
        """Check the file once. Returns whether the callback ran."""
        sig = _signature(self.path)
        if sig is None or sig == self._last:
            return False
        self._last = sig
        self.callback(self.path)
        return True


def wait_for_files(paths: List[str], interval: float = 1.0, timeout: Optional[float] = None) -> bool:
    """
    Block until all paths exist. Returns False if timeout (in seconds) expired first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    announced = set()
    while True:
        missing = [path for path in paths if not os.path.exists(path)]
        if len(missing) == 0:
            return True
        for path in missing:
            if path not in announced:
                logger.info("Waiting for %s to exist...", path)
                announced.add(path)
        if deadline is not None and time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def watch(watchers: List[FileWatcher], interval: float = 1.0, rounds: Optional[int] = None) -> None:
    """Poll watchers in turn every interval seconds; forever unless rounds is given."""
    done = 0
    while rounds is None or done < rounds:
        for watcher in watchers:
            watcher.poll()
        done += 1
        if rounds is None or done < rounds:
            time.sleep(interval)


def mrt_entries_to_snapshot(entries: Iterable[Any], local_asn: int, router_id: str,
                            family: Union[Family, int]) -> Dict[str, Any]:
    """
    Convert MRT RIB entries to a decoded snapshot.

    Entries are bgpdumpy entry objects: TABLE_DUMP_V2 bodies carry prefix,
    prefixLength and routeEntries (each with attr.asPath), legacy TABLE_DUMP
    bodies carry prefix, mask and peerAS. Entries of the other address family
    are skipped.
    """
    version = Family(family).value
    routes: Dict[str, List[Dict[str, Any]]] = {}
    for entry in entries:
        body = entry.body
        if hasattr(body, "routeEntries"):
            prefix_len = body.prefixLength
            paths = [route.attr.asPath for route in body.routeEntries]
        else:
            prefix_len = body.mask
            paths = [str(body.peerAS)]
        network = "%s/%d" % (body.prefix, prefix_len)
        is_ipv6 = ":" in str(body.prefix)
        if is_ipv6 != (version == 6):
            continue
        bucket = routes.setdefault(network, [])
        for path in paths:
            bucket.append({
                "prefixLen": prefix_len,
                "valid": True,
                "path": path or "",
                "network": network,
            })
    logger.info("Converted %i IPv%i prefixes", len(routes), version)
    return {"localAS": local_asn, "routerId": router_id, "routes": routes}


def read_mrt_snapshot(path: str, local_asn: int, router_id: str, family: Union[Family, int]) -> Dict[str, Any]:
    """Read an MRT RIB dump (optionally compressed) into a decoded snapshot."""
    from bgpdumpy import BGPDump

    with BGPDump(path) as bgp:
        return mrt_entries_to_snapshot(bgp, local_asn, router_id, family)
