#!venv/bin/python3
import datetime
import tempfile
import unittest
from unittest import mock

from incident_store import IncidentStore
from nagios_client import Comment, Problem
from nagios_report import format_incident, format_problem, report
from nagios_snow_config import parse_config

CHANGED = datetime.datetime(2026, 10, 19, 8, 0, tzinfo=datetime.UTC)


def problem(host: str, service: str = "", state: int = 2, comments: tuple[Comment, ...] = ()) -> Problem:
    return Problem(host, service, state, False, CHANGED, f"{host} output", comments)


class TestReport(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = parse_config(
            {
                "cachedir": self.tmp.name,
                "nagios": {"url": "https://nagios.example.com"},
                "servicenow": {"url": "https://example.service-now.com"},
                "ticket": {"caller_id": "nagios"},
            },
            environ={},
        )
        self.store = IncidentStore(self.tmp.name)

    def save(self, key: str, number: str) -> None:
        incident = self.store.create(key)
        incident.set_ticket_number(number)
        self.store.write(incident)

    def test_format_problem(self) -> None:
        comments = (
            Comment("jdoe", "looking", CHANGED + datetime.timedelta(minutes=5)),
            Comment("asmith", "disk was full last week", CHANGED - datetime.timedelta(days=7)),
        )
        lines = format_problem(problem("host3", "svcA", 2, comments), [])
        self.assertIn("CRITICAL", lines[0])
        self.assertIn("host3", lines[0])
        self.assertEqual(lines[1:], ["    [OLD] asmith: disk was full last week", "    jdoe: looking"])

    def test_host_state_names(self) -> None:
        self.assertTrue(format_problem(problem("host1", state=1), [])[0].startswith("DOWN"))
        self.assertTrue(format_problem(problem("host1", state=2), [])[0].startswith("UNREACHABLE"))

    def test_report(self) -> None:
        self.save("host1", "42")
        self.save("host2", "99")
        reader = mock.MagicMock()
        reader.get_problems.return_value = [problem("host1", state=1), problem("host3", "svcA", 1)]

        lines = report(self.config, reader, self.store, "prod")

        reader.get_problems.assert_called_once_with("prod")
        self.assertEqual(lines[0], "Hosts down: 1  Services with problems: 1")
        self.assertIn("INC000000000042", lines[2])
        self.assertIn("WARNING", lines[3])
        self.assertEqual(lines[-1], "  INC000000000099 host2")

    def test_report_keeps_every_problem_instance(self) -> None:
        self.save("host3:svcA:7", "7")
        self.save("host3:svcA:8", "8")
        self.save("host4:svcB:1", "11")
        self.save("host4:svcB:2", "12")
        reader = mock.MagicMock()
        reader.get_problems.return_value = [problem("host4", "svcB", 2)]

        lines = report(self.config, reader, self.store, "")

        self.assertIn("INC000000000011,INC000000000012", lines[2])
        self.assertEqual(lines[-2:], ["  INC000000000007 host3:svcA:7", "  INC000000000008 host3:svcA:8"])

    def test_format_incident(self) -> None:
        self.save("host3:svcA:7", "7")
        [incident] = self.store.list_all()
        lines = format_incident(self.config, incident)
        self.assertIn("INC000000000007", lines[0])
        self.assertIn("Service: svcA", lines[0])
        self.assertTrue(lines[1].endswith(".incident"))
        self.assertIn("extinfo.cgi?type=2&host=host3&service=svcA", lines[2])


if __name__ == "__main__":
    unittest.main()
