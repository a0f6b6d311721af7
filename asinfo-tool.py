# Copyright (c) 2023 The asinfo developers
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

import argparse
import json
import logging
import os
import sys

import asinfo
import snapshot


def env_flag(name, default):
    value = os.environ.get(name, default)
    try:
        return int(value) != 0
    except ValueError:
        sys.exit("Environment variable %s must be an integer, not '%s'." % (name, value))


def make_model(args):
    return asinfo.DataModel(ignore_default_routes=args.ignore_default_routes,
                            ignore_special_prefixes=args.ignore_special_prefixes)


def save_family(model, family, as_info_path, routes_path):
    snapshot.write_json_atomic(as_info_path, snapshot.as_info_to_json(model.as_info(family)))
    if routes_path is not None:
        snapshot.write_json_atomic(routes_path, snapshot.routes_to_json(model.routes(family)))


def family_jobs(args):
    """The (family, snapshot, AS info output, routes output) tuples selected by args."""
    jobs = []
    if not args.ipv6_only:
        jobs.append((asinfo.Family.IPV4, args.ipv4, args.as_info_ipv4, args.routes_ipv4))
    if not args.ipv4_only:
        jobs.append((asinfo.Family.IPV6, args.ipv6, args.as_info_ipv6, args.routes_ipv6))
    return jobs


def cmd_import(args):
    model = make_model(args)
    for family, input_path, as_info_path, routes_path in family_jobs(args):
        try:
            snapshot.import_snapshot_file(model, family, input_path)
        except asinfo.SnapshotError as err:
            sys.exit("Cannot import %s: %s." % (input_path, err))
        try:
            save_family(model, family, as_info_path, routes_path)
        except OSError as err:
            sys.exit("Output file '%s' cannot be written to: %s." % (err.filename, err.strerror))
        logging.info("Updated AS info for IPv%i", family.value)


def make_watchers(model, args):
    """One FileWatcher per selected family, re-importing into model on change."""
    watchers = []
    for family, input_path, as_info_path, routes_path in family_jobs(args):
        def on_change(path, family=family, as_info_path=as_info_path, routes_path=routes_path):
            try:
                snapshot.import_snapshot_file(model, family, path)
            except asinfo.SnapshotError as err:
                logging.error("Keeping previous IPv%i data: %s", family.value, err)
                return
            try:
                save_family(model, family, as_info_path, routes_path)
            except OSError as err:
                logging.error("Output file '%s' cannot be written to: %s", err.filename, err.strerror)
                return
            logging.info("Updated AS info for IPv%i", family.value)
        watchers.append(snapshot.FileWatcher(input_path, on_change))
    return watchers


def cmd_watch(args):
    watchers = make_watchers(make_model(args), args)
    # Announce missing snapshots; their watchers pick them up once they appear.
    snapshot.wait_for_files([w.path for w in watchers], timeout=0)
    try:
        snapshot.watch(watchers, interval=args.interval)
    except KeyboardInterrupt:
        pass


def cmd_mrt2json(args):
    try:
        data = snapshot.read_mrt_snapshot(args.infile, args.local_as, args.router_id, args.family)
    except ImportError:
        sys.exit("Reading MRT dumps requires bgpdumpy (pip install 'asinfo[mrt]').")
    text = json.dumps(data, indent=2)
    if args.outfile is None:
        print(text)
    else:
        try:
            snapshot.write_json_atomic(args.outfile, text)
        except OSError as err:
            sys.exit("Output file '%s' cannot be written to: %s." % (args.outfile, err.strerror))


def cmd_show(args):
    model = make_model(args)
    try:
        snapshot.import_snapshot_file(model, args.family, args.infile)
    except asinfo.SnapshotError as err:
        sys.exit("Cannot import %s: %s." % (args.infile, err))
    info = model.router_info(args.family)
    routes = model.routes(args.family)
    as_info = model.as_info(args.family)
    print("# router %s AS%i" % (info.router_id, info.local_asn))
    print("# %i routes, %i ASNs" % (len(routes), len(as_info)))
    for item in sorted(as_info, key=lambda x: (-len(x.neighbor_asns), x.asn)):
        print("AS%s %i prefixes, neighbors %s" % (item.asn, len(item.prefixes),
                                                   " ".join("AS%s" % x for x in item.neighbor_asns)))


def build_parser():
    parser = argparse.ArgumentParser(description="Tool for deriving AS topology information from BGP routing table snapshots.")
    parser.add_argument('-v', '--verbose', dest="verbose", default=False, action="store_true",
                        help="log skipped routes and other details")
    subparsers = parser.add_subparsers(title="valid subcommands", dest="subcommand")

    filters = argparse.ArgumentParser(add_help=False)
    filters.add_argument('--ignore-default-routes', dest="ignore_default_routes", action="store_true",
                         default=env_flag("IGNORE_DEFAULT_ROUTES", "1"),
                         help="drop routes with prefix length 0 (default from IGNORE_DEFAULT_ROUTES, on)")
    filters.add_argument('--keep-default-routes', dest="ignore_default_routes", action="store_false",
                         help="keep routes with prefix length 0")
    filters.add_argument('--ignore-special-prefixes', dest="ignore_special_prefixes", default=False,
                         action="store_true", help="drop routes for private, reserved and documentation networks")

    families = argparse.ArgumentParser(add_help=False, parents=[filters])
    families.add_argument('--ipv4', default=os.environ.get("BGP_IPV4_JSON", "/tmp/bgp_ipv4.json"),
                          help="IPv4 snapshot file (default from BGP_IPV4_JSON)")
    families.add_argument('--ipv6', default=os.environ.get("BGP_IPV6_JSON", "/tmp/bgp_ipv6.json"),
                          help="IPv6 snapshot file (default from BGP_IPV6_JSON)")
    families.add_argument('--as-info-ipv4', default=os.environ.get("AS_INFO_IPV4_JSON", "/tmp/as_info_ipv4.json"),
                          help="IPv4 AS info output (default from AS_INFO_IPV4_JSON)")
    families.add_argument('--as-info-ipv6', default=os.environ.get("AS_INFO_IPV6_JSON", "/tmp/as_info_ipv6.json"),
                          help="IPv6 AS info output (default from AS_INFO_IPV6_JSON)")
    families.add_argument('--routes-ipv4', default=None, help="also write IPv4 routes to this file")
    families.add_argument('--routes-ipv6', default=None, help="also write IPv6 routes to this file")
    only = families.add_mutually_exclusive_group()
    only.add_argument('-4', '--ipv4-only', dest="ipv4_only", default=False, action="store_true",
                      help="process the IPv4 snapshot only")
    only.add_argument('-6', '--ipv6-only', dest="ipv6_only", default=False, action="store_true",
                      help="process the IPv6 snapshot only")

    subparsers.add_parser("import", parents=[families], help="import snapshots once and write AS info")

    parser_watch = subparsers.add_parser("watch", parents=[families],
                                         help="re-import snapshots whenever they change")
    parser_watch.add_argument('-i', '--interval', type=float, default=1.0,
                              help="seconds between checks for changed snapshots (default 1)")

    parser_mrt = subparsers.add_parser("mrt2json", help="convert an MRT RIB dump to a snapshot file")
    parser_mrt.add_argument('--local-as', dest="local_as", type=int, required=True,
                            help="ASN to record as the local AS")
    parser_mrt.add_argument('--router-id', dest="router_id", required=True,
                            help="router ID to record")
    parser_mrt.add_argument('--family', type=int, choices=[4, 6], default=4,
                            help="address family to extract (default 4)")
    parser_mrt.add_argument('infile', help="MRT dump (bz2 or gzip compressed dumps are accepted)")
    parser_mrt.add_argument('outfile', nargs='?', default=None, help="output snapshot file; default is stdout")

    parser_show = subparsers.add_parser("show", parents=[filters], help="summarize one snapshot file")
    parser_show.add_argument('--family', type=int, choices=[4, 6], default=4,
                             help="address family of the snapshot (default 4)")
    parser_show.add_argument('infile', help="snapshot file")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(format="[%(levelname)s] %(message)s",
                        level=logging.DEBUG if args.verbose else logging.INFO)
    if args.subcommand is None:
        parser.print_help()
    elif args.subcommand == "import":
        cmd_import(args)
    elif args.subcommand == "watch":
        cmd_watch(args)
    elif args.subcommand == "mrt2json":
        cmd_mrt2json(args)
    elif args.subcommand == "show":
        cmd_show(args)
    else:
        parser.print_help()
        sys.exit("No command provided.")

if __name__ == '__main__':
    main()
