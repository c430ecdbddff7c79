from __future__ import annotations

import argparse
import dataclasses
import email.message
import enum
import logging
import os
import smtplib
import sys
import typing

import requests

from incident_store import ACK_YES, Incident, IncidentStore, IncidentVanishedError, make_key
from nagios_client import LivestatusError, MonitoringState, nagios_url
from snow_client import Result, SnowError, TicketStatus

if typing.TYPE_CHECKING:
    from nagios_client import LivestatusReader, NagiosCommander
    from nagios_snow_config import Config
    from snow_client import SnowClient

VERSION = "2026-10-19"

# Errors a single reconciliation pass reports instead of raising.
EXTERNAL_ERRORS = (SnowError, LivestatusError, requests.RequestException, OSError, ValueError)


class EventType(enum.Enum):
    PROBLEM = "PROBLEM"
    ACK = "ACKNOWLEDGEMENT"
    RECOVERY = "RECOVERY"

    @classmethod
    def parse(cls, value: str) -> EventType:
        text = value.strip().upper()
        if text == "ACK":
            return cls.ACK
        try:
            return cls(text)
        except ValueError:
            msg = f"Unsupported notification type: {value}. Expected PROBLEM, ACKNOWLEDGEMENT or RECOVERY."
            raise ValueError(msg) from None


@dataclasses.dataclass(frozen=True)
class AlertEvent:
    type: EventType
    host: str
    service: str = ""
    problem_id: str = ""
    subject: str = ""
    description: str = ""
    state: str = ""
    ack_author: str = ""
    ack_comment: str = ""
    site: str = ""
    fields: dict[str, str] = dataclasses.field(default_factory=dict)

    def __str__(self) -> str:
        return f"({self.type.value},{self.host},{self.service or '-'},{self.problem_id or '-'})"


@dataclasses.dataclass(frozen=True)
class Outcome:
    key: str
    result: Result
    message: str

    @property
    def failed(self) -> bool:
        return self.result is Result.FAILED

    def __str__(self) -> str:
        return f"{self.key}: {self.result.value}: {self.message}"


# Journal entry text, rendered by the ticket UI as a small bold-labelled block.
def make_notes(pairs: typing.Iterable[tuple[str, str]]) -> str:
    return "[code]<br />" + "<br />".join(f"<b>{name}</b>: {value}" for name, value in pairs) + "[/code]"


# Reacts to one Nagios notification. Safe to re-deliver: every transition is idempotent
# at the incident record level.
class ForwardReconciler:
    def __init__(self, config: Config, store: IncidentStore, snow: SnowClient) -> None:
        self.config: Config = config
        self.store: IncidentStore = store
        self.snow: SnowClient = snow

    def key_for(self, event: AlertEvent) -> str:
        return make_key(
            event.host,
            event.service,
            event.problem_id,
            collapse_zero_problem_id=self.config.policy.collapse_zero_problem_id,
        )

    def handle(self, event: AlertEvent) -> Outcome:
        logging.info("ForwardReconciler.handle(%s)", event)
        if event.type is EventType.PROBLEM:
            return self.problem(event)
        if event.type is EventType.ACK:
            return self.acknowledge(event)
        return self.recovery(event)

    def ticket_fields(self, event: AlertEvent) -> dict[str, str]:
        fields = dict(self.config.ticket)
        fields["cmdb_ci"] = event.host
        if event.subject:
            fields["short_description"] = event.subject
        fields["description"] = event.description or event.subject or fields.get("short_description", "")
        fields.update(event.fields)
        return fields

    def problem(self, event: AlertEvent) -> Outcome:
        key = self.key_for(event)
        if self.store.exists(key):
            logging.info("Incident %s already on record, not creating another ticket", key)
            return Outcome(key, Result.ALREADY_SATISFIED, "incident already on record")

        try:
            number = self.snow.create(self.ticket_fields(event))
        except (SnowError, requests.RequestException) as e:
            return Outcome(key, Result.FAILED, f"could not create ticket: {e}")

        incident = self.store.create(key)
        incident.set_ticket_number(number)
        incident.site = event.site or self.config.nagios.site

        url = nagios_url(self.config, incident.host, incident.service, incident.site)
        notes = make_notes([("URL", f"<a href='{url}' target='_blank'>{url}</a>"), ("Nagios Site", incident.site)])
        try:
            self.snow.add_comment(number, notes, work_note=True)
        except (SnowError, requests.RequestException) as e:
            logging.warning("Could not add the Nagios link to %s: %s", number, e)

        try:
            self.store.write(incident)
        except OSError as e:
            return Outcome(key, Result.FAILED, f"ticket {number} created but the incident could not be saved: {e}")
        return Outcome(key, Result.APPLIED, f"created ticket {number}")

    def _load(self, key: str) -> tuple[Incident | None, Outcome | None]:
        try:
            incident = self.store.read(key)
        except (OSError, ValueError) as e:
            return None, Outcome(key, Result.FAILED, f"unreadable incident: {e}")
        if incident is None:
            return None, Outcome(key, Result.FAILED, "no incident on record")
        if not incident.ticket_number:
            return None, Outcome(key, Result.FAILED, "incident on record has no ticket number")
        return incident, None

    def recovery(self, event: AlertEvent) -> Outcome:
        key = self.key_for(event)
        incident, failure = self._load(key)
        if failure or incident is None:
            return failure or Outcome(key, Result.FAILED, "no incident on record")

        number = typing.cast(str, incident.ticket_number)
        note = make_notes(
            [
                ("Recovered in Nagios", event.state or "OK"),
                ("Subject", event.subject or "(no subject)"),
                ("Output", event.description or "(none)"),
            ]
        )
        try:
            result = self.snow.resolve(number, self.config.caller_id, note)
        except (SnowError, requests.RequestException) as e:
            return Outcome(key, Result.FAILED, f"could not resolve {number}: {e}")

        try:
            self.store.delete(incident)
        except OSError as e:
            return Outcome(key, Result.FAILED, f"{number} resolved but the incident could not be removed: {e}")
        if result is Result.ALREADY_SATISFIED:
            return Outcome(key, result, f"{number} was already closed; incident removed")
        return Outcome(key, result, f"resolved {number}")

    def acknowledge(self, event: AlertEvent) -> Outcome:
        key = self.key_for(event)
        incident, failure = self._load(key)
        if failure or incident is None:
            return failure or Outcome(key, Result.FAILED, "no incident on record")
        if incident.acknowledged:
            return Outcome(key, Result.ALREADY_SATISFIED, f"{incident.ticket_number} already acknowledged")

        number = typing.cast(str, incident.ticket_number)
        user = event.ack_author or "unknown user"
        text = event.ack_comment or "unknown text"
        notes = make_notes([("Acked in Nagios by", user), ("Nagios comment", text)])
        try:
            self.snow.acknowledge(number, user, notes)
        except (SnowError, requests.RequestException) as e:
            return Outcome(key, Result.FAILED, f"could not acknowledge {number}: {e}")

        incident.ack = ACK_YES
        try:
            self.store.write(incident)
        except OSError as e:
            return Outcome(key, Result.FAILED, f"{number} acknowledged but the incident could not be saved: {e}")
        return Outcome(key, Result.APPLIED, f"acknowledged {number} for {user}")


# Walks every incident on record and repairs divergence between Service Now and Nagios.
#
#   monitoring      ticket              local ack   action
#   clear/absent    resolved/cancelled  -           remove record
#   clear/absent    anything else       -           resolve ticket, remove record
#   problem         resolved/cancelled  no          re-open ticket
#   problem         unknown             -           error
#   problem         open/in progress    yes         nothing
#   problem         open/in progress    no          assignee -> Nagios acknowledgement
class BackwardReconciler:
    def __init__(
        self,
        config: Config,
        store: IncidentStore,
        snow: SnowClient,
        reader: LivestatusReader,
        commander: NagiosCommander,
    ) -> None:
        self.config: Config = config
        self.store: IncidentStore = store
        self.snow: SnowClient = snow
        self.reader: LivestatusReader = reader
        self.commander: NagiosCommander = commander

    def run(self) -> list[Outcome]:
        outcomes = []
        for incident in self.store.list_all():
            outcome = self.reconcile(incident)
            if outcome.failed:
                logging.error("%s", outcome)
            else:
                logging.info("%s", outcome)
            outcomes.append(outcome)
        return outcomes

    def reconcile(self, incident: Incident) -> Outcome:
        try:
            return self._reconcile(incident)
        except IncidentVanishedError as e:
            # A concurrent RECOVERY removed the record first.
            return Outcome(incident.key, Result.ALREADY_SATISFIED, f"incident removed meanwhile: {e}")
        except EXTERNAL_ERRORS as e:
            return Outcome(incident.key, Result.FAILED, f"{type(e).__name__}: {e}")

    def _reconcile(self, incident: Incident) -> Outcome:
        key = incident.key
        if not incident.ticket_number:
            return Outcome(key, Result.FAILED, "no ticket number on record")
        if not incident.host:
            return Outcome(key, Result.FAILED, "no host on record")

        ticket = self.snow.fetch_by_number(incident.ticket_number)
        if ticket.caller != self.config.caller_id:
            logging.warning("%s was opened by %r, not %r", ticket, ticket.caller, self.config.caller_id)
            return Outcome(key, Result.FAILED, f"{ticket.number} was not opened by {self.config.caller_id}")

        state = self.reader.get_state(incident.site, incident.host, incident.service)
        logging.debug("%s: ticket=%s monitoring=%s", incident, ticket, state.value)

        if state is MonitoringState.UNKNOWN:
            return Outcome(key, Result.FAILED, "cannot determine monitoring state")

        if state in {MonitoringState.CLEAR, MonitoringState.ABSENT}:
            return self._cleared(incident, ticket.number, ticket.status, state)

        if ticket.status.closed and not incident.acknowledged:
            note = make_notes(
                [
                    ("Re-opened by", self.config.caller_id),
                    ("Reason", f"ticket was {ticket.status.value.lower()} but Nagios still reports a problem"),
                    ("URL", nagios_url(self.config, incident.host, incident.service, incident.site)),
                ]
            )
            result = self.snow.reopen(
                ticket.number,
                note,
                self.config.watch_list,
                reset_assignment=self.config.policy.reopen_resets_assignment,
            )
            if result is Result.APPLIED:
                logging.warning("%s: re-opened %s, closed while Nagios still reports a problem", key, ticket.number)
            return Outcome(key, result, f"re-opened {ticket.number}; problem still active")

        if ticket.status is TicketStatus.UNKNOWN:
            return Outcome(key, Result.FAILED, f"{ticket.number} has an unknown status")

        if incident.acknowledged:
            return Outcome(key, Result.ALREADY_SATISFIED, f"{ticket.number} {ticket.status.value}, acknowledged")

        if not ticket.assignee:
            return Outcome(key, Result.ALREADY_SATISFIED, f"{ticket.number} not assigned yet")

        username = self.snow.lookup_username(ticket.assignee)
        if not username:
            return Outcome(key, Result.FAILED, f"cannot find a username for assignee {ticket.assignee!r}")

        self.commander.acknowledge(
            incident.site,
            incident.host,
            incident.service or None,
            comment=f"{ticket.number} assigned to {ticket.assignee} in Service Now",
            user=username,
        )
        incident.ack = ACK_YES
        self.store.write(incident, must_exist=True)
        return Outcome(key, Result.APPLIED, f"acknowledged in Nagios for {username} ({ticket.number})")

    def _remove(self, incident: Incident) -> None:
        try:
            self.store.delete(incident)
        except FileNotFoundError:
            logging.info("Incident %s was already removed", incident.key)

    def _cleared(self, incident: Incident, number: str, status: TicketStatus, state: MonitoringState) -> Outcome:
        if status.closed:
            self._remove(incident)
            return Outcome(incident.key, Result.ALREADY_SATISFIED, f"{number} {status.value.lower()}; incident removed")

        reason = "no longer monitored" if state is MonitoringState.ABSENT else "recovered"
        note = make_notes([("Closed by", self.config.caller_id), ("Reason", f"Nagios reports {reason}")])
        result = self.snow.resolve(number, self.config.caller_id, note)
        self._remove(incident)
        return Outcome(incident.key, result, f"resolved {number} ({reason}); incident removed")


# Send an error mail about a failed notification, or log it when no mail server is configured.
def send_error_mail(config: Config, subject: str, body: str, error_text: str) -> None:
    lines = [
        error_text,
        "",
        "=====[ TEXT ]=====",
        *body.splitlines(),
        "=====[ /TEXT ]=====",
        "",
        "=====[ DEBUG ]=====",
        "command line:",
        f"  {' '.join(sys.argv)}",
        "",
        f"servicenow: {config.servicenow!r}",
        f"nagios: {config.nagios!r}",
        "=====[ /DEBUG ]=====",
    ]
    mail = config.error_mail
    if not (mail.smtp_host and mail.to):
        logging.error("%s\n%s", subject, "\n".join(lines))
        return

    message = email.message.EmailMessage()
    message["Subject"] = f"[{mail.subject_prefix}] {subject}"
    message["From"] = mail.sender or f"nagios@{os.uname().nodename}"
    message["To"] = mail.to
    message.set_content("\n".join(lines))
    with smtplib.SMTP(mail.smtp_host, timeout=30) as smtp:
        smtp.send_message(message)
    logging.info("Sent error mail to %s", mail.to)


# https://stackoverflow.com/a/45392259
# usage: argument_parser.add_argument(..., **environ_or_required("ENV_VAR")))
def environ_or_required(key: str) -> dict[str, typing.Any]:
    value = os.environ.get(key)
    if value:
        return {"default": value}
    return {"required": True}


def add_common_arguments(arg_parser: argparse.ArgumentParser) -> None:
    arg_parser.add_argument(
        "--log-level",
        metavar="LOG_LEVEL",
        dest="log_level",
        type=str,
        choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "NOTSET"],
        default="WARN",
        help="Set the verbosity level. Choose from: CRITICAL, ERROR, WARN, INFO, DEBUG, NOTSET.",
    )
    arg_parser.add_argument(
        "--config",
        metavar="PATH",
        dest="config",
        type=str,
        default=None,
        help="YAML configuration file. Defaults to $NAGIOS_SNOW_CONFIG or /etc/nagios-snow/config.yaml.",
    )
    arg_parser.add_argument("--version", action="version", version=("%(prog)s " + VERSION))


def setup_logging(log_level: str) -> None:
    logging.basicConfig(stream=sys.stdout, level=log_level, format="%(levelname)s %(message)s")
