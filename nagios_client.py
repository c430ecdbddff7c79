from __future__ import annotations

import dataclasses
import datetime
import enum
import json
import logging
import os
import re
import socket
import time
import typing
import urllib.parse

if typing.TYPE_CHECKING:
    from nagios_snow_config import Config

# Hosts and services as Nagios accepts them on the command pipe: no ';' and no line breaks.
FIELD_PATTERN = re.compile(r"^[^;\n\r]+$")


class LivestatusError(Exception):
    pass


class MonitoringState(enum.Enum):
    PROBLEM = "problem"
    CLEAR = "clear"
    ABSENT = "absent"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class Comment:
    author: str
    text: str
    entry_time: datetime.datetime

    def __str__(self) -> str:
        return f"{self.author}: {self.text}"


@dataclasses.dataclass(frozen=True)
class Problem:
    host: str
    service: str
    state: int
    acknowledged: bool
    last_state_change: datetime.datetime
    output: str
    comments: tuple[Comment, ...] = ()

    # A comment is fresh when it was written after the problem started; older ones are "OLD".
    def is_fresh(self, comment: Comment) -> bool:
        return comment.entry_time >= self.last_state_change


def _from_timestamp(value: typing.Any) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(int(value or 0), tz=datetime.UTC)


# Function to query a Livestatus unix socket.
# Uses the "fixed16" response header so failures can be told apart from empty results.
def call_livestatus(socket_path: str, query: str, timeout: float) -> list[list[typing.Any]]:
    request = f"{query.strip()}\nOutputFormat: json\nResponseHeader: fixed16\n\n"
    logging.debug("call_livestatus(%s): %r", socket_path, request)

    chunks = []
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(socket_path)
            sock.sendall(request.encode("utf-8"))
            sock.shutdown(socket.SHUT_WR)
            while chunk := sock.recv(65536):
                chunks.append(chunk)
    except OSError as e:
        msg = f"Livestatus query on {socket_path} failed: {e}"
        raise LivestatusError(msg) from e

    data = b"".join(chunks)
    header, body = data[:16].decode("utf-8", "replace"), data[16:]
    if not header[:3].isdigit():
        msg = f"Malformed Livestatus response header from {socket_path}: {header!r}"
        raise LivestatusError(msg)
    if int(header[:3]) != 200:
        msg = f"Livestatus error {header[:3]} from {socket_path}: {body.decode('utf-8', 'replace').strip()}"
        raise LivestatusError(msg)

    try:
        return typing.cast(list[list[typing.Any]], json.loads(body))
    except ValueError as e:
        msg = f"Invalid Livestatus JSON from {socket_path}: {e}"
        raise LivestatusError(msg) from e


def _quote_filter(value: str) -> str:
    if not FIELD_PATTERN.match(value):
        msg = f"Invalid host or service name: {value!r}"
        raise ValueError(msg)
    return value


class LivestatusReader:
    def __init__(self, config: Config) -> None:
        self.livestatus = config.nagios.livestatus
        self.timeout: float = config.nagios.query_timeout

    def query(self, site: str | None, query: str) -> list[list[typing.Any]]:
        return call_livestatus(self.livestatus.for_site(site), query, self.timeout)

    def _state(self, site: str | None, query: str, entity: str) -> MonitoringState:
        try:
            rows = self.query(site, query)
        except LivestatusError as e:
            logging.error("Cannot determine state of %s: %s", entity, e)
            return MonitoringState.UNKNOWN

        if not rows:
            logging.info("%s is not monitored (site=%s)", entity, site or "default")
            return MonitoringState.ABSENT
        state = rows[0][0]
        logging.debug("%s state=%s", entity, state)
        return MonitoringState.CLEAR if int(state) == 0 else MonitoringState.PROBLEM

    def get_host_state(self, site: str | None, host: str) -> MonitoringState:
        query = f"GET hosts\nColumns: state\nFilter: name = {_quote_filter(host)}"
        return self._state(site, query, host)

    def get_service_state(self, site: str | None, host: str, service: str) -> MonitoringState:
        query = (
            "GET services\nColumns: state\n"
            f"Filter: host_name = {_quote_filter(host)}\n"
            f"Filter: description = {_quote_filter(service)}"
        )
        return self._state(site, query, f"{host}/{service}")

    def get_state(self, site: str | None, host: str, service: str = "") -> MonitoringState:
        if service:
            return self.get_service_state(site, host, service)
        return self.get_host_state(site, host)

    def exists(self, site: str | None, host: str, service: str = "") -> bool:
        return self.get_state(site, host, service) in {MonitoringState.PROBLEM, MonitoringState.CLEAR}

    # Current host and service problems, with their comments, for the outage digest.
    def get_problems(self, site: str | None) -> list[Problem]:
        comments: dict[tuple[str, str], list[Comment]] = {}
        for host, service, author, text, entry_time in self.query(
            site, "GET comments\nColumns: host_name service_description author comment entry_time"
        ):
            comments.setdefault((host, service), []).append(Comment(author, text, _from_timestamp(entry_time)))

        problems = [
            Problem(
                host, "", int(state), bool(ack), _from_timestamp(changed), output, tuple(comments.get((host, ""), []))
            )
            for host, state, ack, changed, output in self.query(
                site,
                "GET hosts\nColumns: name state acknowledged last_state_change plugin_output\nFilter: state != 0",
            )
        ]
        problems.extend(
            Problem(
                host,
                service,
                int(state),
                bool(ack),
                _from_timestamp(changed),
                output,
                tuple(comments.get((host, service), [])),
            )
            for host, service, state, ack, changed, output in self.query(
                site,
                "GET services\n"
                "Columns: host_name description state acknowledged last_state_change plugin_output\n"
                "Filter: state != 0",
            )
        )
        problems.sort(key=lambda problem: (problem.host, problem.service))
        return problems


# Writes external commands into the Nagios command pipe.
# The pipe is opened non-blocking, so a Nagios that is not reading fails instead of hanging.
class NagiosCommander:
    def __init__(self, config: Config) -> None:
        self.cmd_pipe = config.nagios.cmd_pipe

    def external_command(self, site: str | None, *command: str | int) -> str:
        for value in command:
            if isinstance(value, str) and ("\n" in value or "\r" in value):
                msg = f"Line break in external command argument: {value!r}"
                raise ValueError(msg)
        line = ";".join(str(value) for value in command)
        pipe = self.cmd_pipe.for_site(site)
        logging.info("external_command(%s): %s", pipe, line)

        fd = os.open(pipe, os.O_WRONLY | os.O_APPEND | os.O_NONBLOCK)
        with os.fdopen(fd, "w", encoding="utf-8") as cmd:
            cmd.write(f"{line}\n")
        return line

    @staticmethod
    def _target(kind: str, host: str, service: str | None, now: int) -> str:
        _quote_filter(host)
        if service:
            _quote_filter(service)
            return f"[{now}] {kind.format('SVC')};{host};{service}"
        return f"[{now}] {kind.format('HOST')};{host}"

    def acknowledge(self, site: str | None, host: str, service: str | None, comment: str, user: str) -> str:
        if not comment:
            msg = "Acknowledgement needs a comment."
            raise ValueError(msg)
        target = self._target("ACKNOWLEDGE_{}_PROBLEM", host, service, int(time.time()))
        # sticky, notify, persistent
        return self.external_command(site, target, 1, 1, 1, user or "*unknown*", comment)

    def downtime(
        self,
        site: str | None,
        host: str,
        service: str | None,
        comment: str,
        user: str,
        hours: float = 0,
        start: int | None = None,
    ) -> str:
        if not comment:
            msg = "Downtime needs a comment."
            raise ValueError(msg)
        start = start or int(time.time())
        duration = int(hours * 3600)
        target = self._target("SCHEDULE_{}_DOWNTIME", host, service, start)
        # start, end, fixed, trigger id, duration
        return self.external_command(
            site, target, start, start + duration, 1, 0, duration, user or "*unknown*", comment
        )

    def schedule_check(
        self,
        site: str | None,
        host: str,
        service: str | None,
        user: str,
        minutes: float = 0,
        start: int | None = None,
    ) -> str:
        start = start or int(time.time())
        check_time = start + int(minutes * 60)
        target = self._target("SCHEDULE_FORCED_{}_CHECK", host, service, start)
        logging.info("Forced check of %s/%s at %s requested by %s", host, service or "", check_time, user)
        return self.external_command(site, target, check_time)


# URL pointing at the host or service page of the configured Nagios (or check_mk) web UI.
def nagios_url(config: Config, host: str, service: str = "", site: str | None = None) -> str:
    base = config.nagios.url
    site = site or config.nagios.site
    if config.nagios.style == "check_mk":
        if service:
            view = f"view.py?view_name=service&host={urllib.parse.quote(host)}&service={urllib.parse.quote(service)}"
        else:
            view = f"view.py?view_name=hoststatus&site=&host={urllib.parse.quote(host)}"
        return f"{base}/{site}/check_mk/index.py?{urllib.parse.urlencode({'start_url': view})}"

    if service:
        query = urllib.parse.urlencode({"type": 2, "host": host, "service": service})
        return f"{base}/cgi-bin/extinfo.cgi?{query}"
    return f"{base}/cgi-bin/extinfo.cgi?{urllib.parse.urlencode({'type': 1, 'host': host})}"
