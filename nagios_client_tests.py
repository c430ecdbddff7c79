#!venv/bin/python3
import datetime
import json
import pathlib
import tempfile
import unittest
from unittest import mock

from nagios_client import (
    Comment,
    LivestatusError,
    LivestatusReader,
    MonitoringState,
    NagiosCommander,
    Problem,
    call_livestatus,
    nagios_url,
)
from nagios_snow_config import parse_config

NOW = 1_700_000_000


def make_config(**nagios: object):
    return parse_config(
        {
            "nagios": {"url": "https://nagios.example.com", "site": "prod", **nagios},
            "servicenow": {"url": "https://example.service-now.com"},
            "ticket": {"caller_id": "nagios"},
        },
        environ={},
    )


def livestatus_response(status: int, body: str) -> bytes:
    payload = body.encode("utf-8")
    return f"{status:03d} {len(payload):>11}\n".encode() + payload


class TestCallLivestatus(unittest.TestCase):
    def mock_socket(self, data: bytes) -> mock.MagicMock:
        sock = mock.MagicMock()
        sock.__enter__.return_value = sock
        sock.recv.side_effect = [data, b""]
        return sock

    def test_ok(self) -> None:
        sock = self.mock_socket(livestatus_response(200, json.dumps([[0]])))
        with mock.patch("nagios_client.socket.socket", return_value=sock):
            self.assertEqual(call_livestatus("/run/live", "GET hosts\nColumns: state", 5), [[0]])
        sock.connect.assert_called_once_with("/run/live")
        sock.settimeout.assert_called_once_with(5)
        request = sock.sendall.call_args.args[0].decode()
        self.assertIn("OutputFormat: json\n", request)
        self.assertIn("ResponseHeader: fixed16\n", request)
        self.assertTrue(request.endswith("\n\n"))

    def test_error_status(self) -> None:
        sock = self.mock_socket(livestatus_response(400, "Invalid header"))
        with mock.patch("nagios_client.socket.socket", return_value=sock), self.assertRaises(LivestatusError):
            call_livestatus("/run/live", "GET hosts", 5)

    def test_connection_failure(self) -> None:
        sock = mock.MagicMock()
        sock.__enter__.return_value = sock
        sock.connect.side_effect = FileNotFoundError("no socket")
        with mock.patch("nagios_client.socket.socket", return_value=sock), self.assertRaises(LivestatusError):
            call_livestatus("/run/live", "GET hosts", 5)

    def test_malformed_body(self) -> None:
        sock = self.mock_socket(livestatus_response(200, "[[0"))
        with mock.patch("nagios_client.socket.socket", return_value=sock), self.assertRaises(LivestatusError):
            call_livestatus("/run/live", "GET hosts", 5)


class TestLivestatusReader(unittest.TestCase):
    def setUp(self) -> None:
        self.reader = LivestatusReader(make_config())

    def test_states(self) -> None:
        cases = [
            ([[0]], MonitoringState.CLEAR),
            ([[2]], MonitoringState.PROBLEM),
            ([], MonitoringState.ABSENT),
            (LivestatusError("down"), MonitoringState.UNKNOWN),
        ]
        for i, case in enumerate(cases):
            rows, expected = case
            with self.subTest(i=i, case=case), mock.patch("nagios_client.call_livestatus", side_effect=[rows]):
                self.assertIs(self.reader.get_state("prod", "host1", "svcA"), expected)

    def test_service_query(self) -> None:
        with mock.patch("nagios_client.call_livestatus", return_value=[[1]]) as call:
            self.assertIs(self.reader.get_state(None, "host3", "svcA"), MonitoringState.PROBLEM)
        socket_path, query, _ = call.call_args.args
        self.assertEqual(socket_path, "/var/run/nagios/rw/live")
        self.assertIn("GET services", query)
        self.assertIn("Filter: host_name = host3", query)
        self.assertIn("Filter: description = svcA", query)

    def test_host_query_for_site(self) -> None:
        with mock.patch("nagios_client.call_livestatus", return_value=[[0]]) as call:
            self.assertTrue(self.reader.exists("prod", "host1"))
        socket_path, query, _ = call.call_args.args
        self.assertEqual(socket_path, "/omd/sites/prod/tmp/run/live")
        self.assertIn("GET hosts", query)

    def test_invalid_name(self) -> None:
        with self.assertRaises(ValueError):
            self.reader.get_state(None, "host1\nGET status")

    def test_get_problems(self) -> None:
        responses = [
            [["host1", "", "jdoe", "looking", NOW + 10], ["host3", "svcA", "asmith", "old note", NOW - 10]],
            [["host1", 1, 0, NOW, "PING CRITICAL"]],
            [["host3", "svcA", 2, 1, NOW, "DISK CRITICAL"]],
        ]
        with mock.patch("nagios_client.call_livestatus", side_effect=responses):
            problems = self.reader.get_problems("prod")

        self.assertEqual([(p.host, p.service, p.state, p.acknowledged) for p in problems], [
            ("host1", "", 1, False),
            ("host3", "svcA", 2, True),
        ])
        self.assertTrue(problems[0].is_fresh(problems[0].comments[0]))
        self.assertFalse(problems[1].is_fresh(problems[1].comments[0]))


class TestProblem(unittest.TestCase):
    def test_is_fresh(self) -> None:
        changed = datetime.datetime.fromtimestamp(NOW, tz=datetime.UTC)
        problem = Problem("host1", "", 1, False, changed, "down")
        self.assertTrue(problem.is_fresh(Comment("a", "b", changed)))
        self.assertFalse(problem.is_fresh(Comment("a", "b", changed - datetime.timedelta(seconds=1))))


class TestNagiosCommander(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.pipe = pathlib.Path(self.tmp.name) / "nagios.cmd"
        self.pipe.write_text("")
        self.commander = NagiosCommander(make_config(cmdPipe=str(self.pipe)))

    def lines(self) -> list[str]:
        return self.pipe.read_text().splitlines()

    @mock.patch("nagios_client.time.time", return_value=NOW)
    def test_acknowledge_service(self, _: mock.MagicMock) -> None:
        self.commander.acknowledge(None, "host3", "svcA", "INC42 assigned", "jdoe")
        self.assertEqual(self.lines(), [f"[{NOW}] ACKNOWLEDGE_SVC_PROBLEM;host3;svcA;1;1;1;jdoe;INC42 assigned"])

    @mock.patch("nagios_client.time.time", return_value=NOW)
    def test_acknowledge_host(self, _: mock.MagicMock) -> None:
        self.commander.acknowledge(None, "host1", None, "on it", "jdoe")
        self.assertEqual(self.lines(), [f"[{NOW}] ACKNOWLEDGE_HOST_PROBLEM;host1;1;1;1;jdoe;on it"])

    def test_downtime(self) -> None:
        self.commander.downtime(None, "host1", "svcA", "maintenance", "jdoe", hours=2, start=NOW)
        self.assertEqual(
            self.lines(),
            [f"[{NOW}] SCHEDULE_SVC_DOWNTIME;host1;svcA;{NOW};{NOW + 7200};1;0;7200;jdoe;maintenance"],
        )

    def test_schedule_check(self) -> None:
        self.commander.schedule_check(None, "host1", None, "jdoe", minutes=5, start=NOW)
        self.assertEqual(self.lines(), [f"[{NOW}] SCHEDULE_FORCED_HOST_CHECK;host1;{NOW + 300}"])

    def test_rejects_injection(self) -> None:
        cases = [
            ("host1", "svcA", "text\n[0] SHUTDOWN_PROGRAM"),
            ("host1;x", "svcA", "text"),
            ("host1", "svc\nA", "text"),
            ("host1", "svcA", ""),
        ]
        for i, case in enumerate(cases):
            host, service, comment = case
            with self.subTest(i=i, case=case), self.assertRaises(ValueError):
                self.commander.acknowledge(None, host, service, comment, "jdoe")
        self.assertEqual(self.lines(), [])

    def test_missing_pipe(self) -> None:
        self.pipe.unlink()
        with self.assertRaises(OSError):
            self.commander.acknowledge(None, "host1", None, "on it", "jdoe")


class TestNagiosUrl(unittest.TestCase):
    def test_nagios_style(self) -> None:
        config = make_config()
        self.assertEqual(
            nagios_url(config, "host1"), "https://nagios.example.com/cgi-bin/extinfo.cgi?type=1&host=host1"
        )
        self.assertEqual(
            nagios_url(config, "host3", "svc A"),
            "https://nagios.example.com/cgi-bin/extinfo.cgi?type=2&host=host3&service=svc+A",
        )

    def test_check_mk_style(self) -> None:
        config = make_config(style="check_mk")
        url = nagios_url(config, "host3", "svcA", "other")
        self.assertTrue(url.startswith("https://nagios.example.com/other/check_mk/index.py?start_url="))
        self.assertIn("view_name%3Dservice", url)
        self.assertTrue(nagios_url(config, "host1").startswith("https://nagios.example.com/prod/check_mk/"))


if __name__ == "__main__":
    unittest.main()
