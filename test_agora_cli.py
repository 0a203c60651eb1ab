"""Tests for the NDJSON command line runner."""

import io
import json
import os
import tempfile
import unittest
from unittest.mock import patch

import agora_cli
from agora_client import TransportError
from test_sync_engine import FakeClient

CONFIGURATION = {
    "app_id": "app-1",
    "customer_id": "customer",
    "customer_secret": "secret",
    "start_date": "2021-05-01",
    "streams": ["events"],
}


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config_path = os.path.join(self.tmp.name, "configuration.json")
        with open(self.config_path, "w") as f:
            json.dump(CONFIGURATION, f)
        self.out = io.StringIO()

    def run_cli(self, *args):
        code = agora_cli.main(list(args), out=self.out)
        return code, [json.loads(line) for line in self.out.getvalue().splitlines()]

    def test_load_state_accepts_message_body_or_bare_mapping(self):
        self.assertEqual(agora_cli.load_state('{"data": {"events": {"timestamp": 1}}}'), {"events": {"timestamp": 1}})
        self.assertEqual(agora_cli.load_state('{"events": {"timestamp": 1}}'), {"events": {"timestamp": 1}})
        self.assertEqual(agora_cli.load_state(None), {})
        with self.assertRaises(ValueError):
            agora_cli.load_state("[1, 2]")

    def test_discover_writes_table_definitions(self):
        code, lines = self.run_cli("discover", "--config", self.config_path)
        self.assertEqual(code, 0)
        self.assertEqual([table["table"] for table in lines[0]["streams"]], ["events"])

    def test_read_writes_records_and_state(self):
        client = FakeClient({"/v1/events": [{"events": [{"event_id": "e1", "timestamp": 1620000100}]}]})
        with patch("agora_cli.AgoraClient", return_value=client):
            code, lines = self.run_cli(
                "read", "--config", self.config_path, "--state", '{"data": {"events": {"timestamp": 1620000000000}}}'
            )

        self.assertEqual(code, 0)
        records = [line for line in lines if line["type"] == "RECORD"]
        states = [line for line in lines if line["type"] == "STATE"]
        self.assertEqual(records[0]["record"]["data"]["event_id"], "e1")
        self.assertEqual(states, [{"type": "STATE", "state": {"data": {"events": {"timestamp": 1620000100000}}}}])
        self.assertEqual(client.calls[0][1]["from_date"], "2021-05-03")

    def test_read_reports_failed_streams(self):
        def fail(params):
            raise TransportError("GET /v1/events returned HTTP 500", status_code=500)

        with patch("agora_cli.AgoraClient", return_value=FakeClient({"/v1/events": fail})):
            code, lines = self.run_cli("read", "--config", self.config_path)

        self.assertEqual(code, 1)
        errors = [line["message"] for line in lines if line["type"] == "LOG" and line["level"] == "ERROR"]
        self.assertTrue(any("events" in message for message in errors))

    def test_check_success_and_failure(self):
        with patch("agora_cli.AgoraClient") as client_class:
            client_class.return_value.check_connection.return_value = True
            code, lines = self.run_cli("check", "--config", self.config_path)
        self.assertEqual(code, 0)
        self.assertEqual(lines[-1]["level"], "INFO")

        self.out = io.StringIO()
        with patch("agora_cli.AgoraClient") as client_class:
            client_class.return_value.check_connection.side_effect = TransportError("HTTP 401", status_code=401)
            code, lines = self.run_cli("check", "--config", self.config_path)
        self.assertEqual(code, 1)
        self.assertEqual(lines[-1]["level"], "ERROR")

    def test_invalid_configuration_exits_with_error(self):
        with open(self.config_path, "w") as f:
            json.dump(dict(CONFIGURATION, region="mars"), f)
        code, lines = self.run_cli("read", "--config", self.config_path)
        self.assertEqual(code, 1)
        self.assertEqual(lines[-1]["level"], "ERROR")


if __name__ == "__main__":
    unittest.main()
