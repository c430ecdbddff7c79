from __future__ import annotations

import dataclasses
import datetime
import email.utils
import enum
import logging
import time
import typing

import requests

from incident_store import normalize_ticket_number

if typing.TYPE_CHECKING:
    from nagios_snow_config import SnowConfig

RETRY_CODES = {requests.codes.too_many_requests}
MAX_RETRY_DELAY = 60.0
TICKET_FIELDS = "sys_id,number,incident_state,short_description,assigned_to.name,caller_id.user_name"


class SnowError(Exception):
    pass


class TicketNotFoundError(SnowError):
    pass


class AmbiguousTicketError(SnowError):
    pass


class Result(enum.Enum):
    APPLIED = "applied"
    ALREADY_SATISFIED = "already-satisfied"
    FAILED = "failed"


class TicketStatus(enum.Enum):
    OPEN = "Open"
    WORK_IN_PROGRESS = "Work In Progress"
    RESOLVED = "Resolved"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"

    @property
    def closed(self) -> bool:
        return self in {TicketStatus.RESOLVED, TicketStatus.CANCELLED}

    # incident_state codes:
    #   1 New/Open, 2 Work In Progress, 3-5 Pending/Awaiting, 6 Resolved, 7 Closed, 8 Cancelled.
    # Display labels are accepted too, case-insensitively.
    @classmethod
    def parse(cls, value: typing.Any) -> TicketStatus:
        text = str(value or "").strip().lower()
        codes = {
            "1": cls.OPEN,
            "2": cls.WORK_IN_PROGRESS,
            "3": cls.WORK_IN_PROGRESS,
            "4": cls.WORK_IN_PROGRESS,
            "5": cls.WORK_IN_PROGRESS,
            "6": cls.RESOLVED,
            "7": cls.RESOLVED,
            "8": cls.CANCELLED,
        }
        labels = {
            "new": cls.OPEN,
            "open": cls.OPEN,
            "assigned": cls.WORK_IN_PROGRESS,
            "work in progress": cls.WORK_IN_PROGRESS,
            "in progress": cls.WORK_IN_PROGRESS,
            "pending": cls.WORK_IN_PROGRESS,
            "on hold": cls.WORK_IN_PROGRESS,
            "resolved": cls.RESOLVED,
            "closed": cls.RESOLVED,
            "cancelled": cls.CANCELLED,
            "canceled": cls.CANCELLED,
        }
        return codes.get(text) or labels.get(text) or cls.UNKNOWN


@dataclasses.dataclass(frozen=True)
class Ticket:
    number: str
    sys_id: str
    status: TicketStatus
    assignee: str = ""
    caller: str = ""
    short_description: str = ""
    raw_data: dict[str, typing.Any] | None = None

    @classmethod
    def from_api(cls, data: dict[str, typing.Any]) -> Ticket:
        return cls(
            number=normalize_ticket_number(data.get("number")) or str(data.get("number") or ""),
            sys_id=str(data.get("sys_id") or ""),
            status=TicketStatus.parse(data.get("incident_state")),
            assignee=str(data.get("assigned_to.name") or ""),
            caller=str(data.get("caller_id.user_name") or ""),
            short_description=str(data.get("short_description") or ""),
            raw_data=data,
        )

    def __str__(self) -> str:
        return f"({self.number},{self.status.value},assignee={self.assignee or '-'})"

    def __repr__(self) -> str:
        return f"Ticket{self}"


# Seconds to wait before a retry. Retry-After is either a number of seconds or an HTTP date;
# anything unparseable falls back to the default. Never more than MAX_RETRY_DELAY.
def retry_delay(retry_after: str | None, default: float) -> float:
    value = (retry_after or "").strip()
    if not value:
        return min(default, MAX_RETRY_DELAY)
    if value.replace(".", "", 1).isdigit():
        return min(float(value), MAX_RETRY_DELAY)
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logging.warning("Ignoring unparseable Retry-After header: %r", value)
        return min(default, MAX_RETRY_DELAY)
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.UTC)
    seconds = (when - datetime.datetime.now(tz=datetime.UTC)).total_seconds()
    return min(max(seconds, 0.0), MAX_RETRY_DELAY)


# Client for the Service Now Table API (/api/now/table/...).
# Every call has a deadline; 429 and 5xx responses are retried a few times.
class SnowClient:
    def __init__(self, config: SnowConfig, session: requests.Session, max_retries: int = 3) -> None:
        self.config: SnowConfig = config
        self.session: requests.Session = session
        self.max_retries: int = max_retries
        self.session.auth = (config.username, config.password)
        self.session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})

    def call(
        self,
        method: str,
        path: str,
        params: dict[str, typing.Any] | None = None,
        payload: dict[str, typing.Any] | None = None,
    ) -> typing.Any:
        url = f"{self.config.url}/api/now/table/{path}"
        retry = 0
        while True:
            logging.info("SnowClient.call(%s %s, params=%s, retry=%s)", method, url, params, retry)
            response: requests.Response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                timeout=self.config.timeout,
                verify=self.config.verify,
            )

            if response.status_code in RETRY_CODES or response.status_code >= requests.codes.internal_server_error:
                if retry < self.max_retries:
                    delay = retry_delay(response.headers.get("Retry-After"), 2**retry)
                    logging.info("response.status_code is %s, repeating in %ss", response.status_code, delay)
                    time.sleep(delay)
                    retry += 1
                    continue

            if response.status_code not in {requests.codes.ok, requests.codes.created}:
                msg = f"{method} {url} failed: {response.status_code} {response.text[:200]}"
                raise SnowError(msg)

            return response.json().get("result")

    def create(self, fields: dict[str, str]) -> str:
        result = self.call("POST", "incident", params={"sysparm_fields": "sys_id,number"}, payload=fields)
        number = normalize_ticket_number((result or {}).get("number"))
        if not number:
            msg = f"Ticket creation returned no usable number: {result}"
            raise SnowError(msg)
        logging.info("Created ticket %s", number)
        return number

    def find_tickets(self, number: str) -> list[Ticket]:
        canonical = normalize_ticket_number(number)
        if not canonical:
            msg = f"Invalid ticket number: {number!r}"
            raise SnowError(msg)
        params = {
            "sysparm_query": f"number={canonical}",
            "sysparm_fields": TICKET_FIELDS,
            "sysparm_display_value": "false",
            "sysparm_limit": 2,
        }
        return [Ticket.from_api(data) for data in self.call("GET", "incident", params=params) or []]

    def fetch_by_number(self, number: str) -> Ticket:
        tickets = self.find_tickets(number)
        if not tickets:
            msg = f"No ticket matches {number}"
            raise TicketNotFoundError(msg)
        if len(tickets) > 1:
            msg = f"More than one ticket matches {number}"
            raise AmbiguousTicketError(msg)
        return tickets[0]

    def _update(self, ticket: Ticket, fields: dict[str, str]) -> None:
        logging.debug("Updating %s: %s", ticket, fields)
        self.call("PATCH", f"incident/{ticket.sys_id}", params={"sysparm_fields": "sys_id"}, payload=fields)

    def update(self, number: str, fields: dict[str, str]) -> None:
        self._update(self.fetch_by_number(number), fields)

    def add_comment(self, number: str, text: str, *, work_note: bool = False) -> None:
        self.update(number, {"work_notes" if work_note else "comments": text})

    # Ensure the ticket is resolved; an already resolved or cancelled ticket is left alone.
    def resolve(self, number: str, closer: str, note: str) -> Result:
        ticket = self.fetch_by_number(number)
        if ticket.status.closed:
            logging.info("%s is already %s", ticket.number, ticket.status.value)
            return Result.ALREADY_SATISFIED
        self._update(
            ticket,
            {
                "closed_by": closer,
                "close_code": "Other (must describe below)",
                "close_notes": note,
                "incident_state": "6",
            },
        )
        return Result.APPLIED

    def reopen(self, number: str, note: str, watch_list: str = "", *, reset_assignment: bool = False) -> Result:
        ticket = self.fetch_by_number(number)
        if not ticket.status.closed:
            logging.info("%s is already %s", ticket.number, ticket.status.value)
            return Result.ALREADY_SATISFIED
        fields = {"incident_state": "1", "work_notes": note}
        if watch_list:
            fields["watch_list"] = watch_list
        if reset_assignment:
            fields["assigned_to"] = ""
        self._update(ticket, fields)
        return Result.APPLIED

    # Assign the ticket to the acknowledging user, mark it in progress and journal the comment.
    def acknowledge(self, number: str, user: str, text: str) -> Result:
        ticket = self.fetch_by_number(number)
        self._update(ticket, {"assigned_to": user, "incident_state": "2"})
        self._update(ticket, {"comments": text})
        return Result.APPLIED

    # The login of a user is the part of their e-mail address before '@'.
    def lookup_username(self, display_name: str) -> str | None:
        if not display_name:
            return None
        params = {"sysparm_query": f"name={display_name}", "sysparm_fields": "email,user_name", "sysparm_limit": 2}
        entries = self.call("GET", "sys_user", params=params) or []
        if len(entries) != 1:
            logging.info("%d sys_user matches for %r", len(entries), display_name)
            return None
        email = str(entries[0].get("email") or "")
        if "@" in email:
            return email.split("@", 1)[0]
        return str(entries[0].get("user_name") or "") or None
