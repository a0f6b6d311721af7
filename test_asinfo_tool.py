"""Tests for the asinfo-tool.py command line front end."""

import importlib.util
import json
import os
import tempfile
import unittest

from asinfo import DataModel, Family

tool_spec = importlib.util.spec_from_file_location(
    "asinfo_tool", os.path.join(os.path.dirname(os.path.abspath(__file__)), "asinfo-tool.py"))
asinfo_tool = importlib.util.module_from_spec(tool_spec)
tool_spec.loader.exec_module(asinfo_tool)

SNAPSHOT = {
    "routerId": "192.0.2.1",
    "localAS": 64500,
    "routes": {
        "1.1.1.0/24": [
            {"valid": True, "prefixLen": 24, "network": "1.1.1.0/24", "path": "2914 13335"},
        ],
    },
}


class TestTool(unittest.TestCase):
    """Tests for the import and watch subcommands."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.snapshot = self.path("bgp_ipv4.json")
        self.write_snapshot(SNAPSHOT)

    def path(self, name):
        return os.path.join(self.tmpdir.name, name)

    def write_snapshot(self, data):
        with open(self.snapshot, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def test_import_writes_as_info(self) -> None:
        out = self.path("as_info_ipv4.json")
        routes = self.path("routes_ipv4.json")
        asinfo_tool.main(["import", "-4", "--ipv4", self.snapshot, "--as-info-ipv4", out,
                          "--routes-ipv4", routes])
        with open(out, encoding="utf-8") as f:
            as_info = json.load(f)
        self.assertEqual(sorted(x["asn"] for x in as_info), ["13335", "2914", "64500"])
        with open(routes, encoding="utf-8") as f:
            self.assertEqual(json.load(f)[0]["originAsn"], "13335")

    def test_import_unwritable_output_exits(self) -> None:
        out = self.path(os.path.join("missing", "as_info_ipv4.json"))
        with self.assertRaisesRegex(SystemExit, "cannot be written to"):
            asinfo_tool.main(["import", "-4", "--ipv4", self.snapshot, "--as-info-ipv4", out])

    def test_import_malformed_snapshot_exits(self) -> None:
        self.write_snapshot({"routerId": "192.0.2.1", "routes": {}})
        with self.assertRaisesRegex(SystemExit, "Cannot import"):
            asinfo_tool.main(["import", "-4", "--ipv4", self.snapshot,
                              "--as-info-ipv4", self.path("as_info_ipv4.json")])

    def make_watcher(self, out):
        args = asinfo_tool.build_parser().parse_args(
            ["watch", "-4", "--ipv4", self.snapshot, "--as-info-ipv4", out])
        model = DataModel()
        watchers = asinfo_tool.make_watchers(model, args)
        self.assertEqual(len(watchers), 1)
        return model, watchers[0]

    def test_watch_writes_on_change(self) -> None:
        out = self.path("as_info_ipv4.json")
        model, watcher = self.make_watcher(out)
        with self.assertLogs(level="INFO") as logs:
            self.assertTrue(watcher.poll())
        self.assertTrue(any("Updated AS info for IPv4" in line for line in logs.output))
        self.assertTrue(os.path.exists(out))
        self.assertEqual(len(model.routes(Family.IPV4)), 1)

    def test_watch_unwritable_output_logs(self) -> None:
        model, watcher = self.make_watcher(self.path(os.path.join("missing", "as_info_ipv4.json")))
        with self.assertLogs(level="ERROR") as logs:
            watcher.poll()
        self.assertIn("cannot be written to", logs.output[0])
        # The import itself went through and the watcher keeps running.
        self.assertEqual(len(model.routes(Family.IPV4)), 1)
        self.assertFalse(watcher.poll())

    def test_watch_malformed_snapshot_keeps_data(self) -> None:
        out = self.path("as_info_ipv4.json")
        model, watcher = self.make_watcher(out)
        with self.assertLogs(level="INFO"):
            watcher.poll()
        with open(self.snapshot, "w", encoding="utf-8") as f:
            f.write("{\"routes\": ")
        with self.assertLogs(level="ERROR") as logs:
            watcher.poll()
        self.assertIn("Keeping previous IPv4 data", logs.output[0])
        self.assertEqual(len(model.routes(Family.IPV4)), 1)


if __name__ == '__main__':
    unittest.main()
