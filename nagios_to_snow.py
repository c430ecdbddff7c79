#!venv/bin/python3

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import smtplib
import sys
import typing

import requests

from incident_store import IncidentStore
from nagios_snow import AlertEvent, EventType, ForwardReconciler, add_common_arguments, send_error_mail, setup_logging
from nagios_snow_config import ConfigError, load_config
from snow_client import SnowClient


@dataclasses.dataclass(frozen=True)
class Args:
    log_level: str
    config: str | None
    type: EventType
    host: str
    service: str
    problem_id: str
    subject: str
    state: str
    ack_author: str
    ack_comment: str
    site: str
    fields: list[tuple[str, str]]


def parse_field(value: str) -> tuple[str, str]:
    name, sep, text = value.partition("=")
    if not sep or not name.strip():
        msg = f"Invalid ticket field: {value}. Expected KEY=VALUE."
        raise argparse.ArgumentTypeError(msg)
    return name.strip(), text


def build_parser() -> argparse.ArgumentParser:
    arg_parser = argparse.ArgumentParser(
        description="nagios-to-snow: open, acknowledge and resolve Service Now tickets from Nagios notifications.\n"
        "The notification text (long output) is read from standard input.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    add_common_arguments(arg_parser)
    arg_parser.add_argument(
        "--type",
        metavar="TYPE",
        dest="type",
        type=EventType.parse,
        required=True,
        help="Nagios notification type: PROBLEM, ACKNOWLEDGEMENT (or ACK), RECOVERY.",
    )
    arg_parser.add_argument(
        "--host",
        "--ciname",
        metavar="HOST",
        dest="host",
        type=str,
        required=True,
        help="Host name ($HOSTNAME$).",
    )
    arg_parser.add_argument(
        "--service",
        "--servicename",
        metavar="SERVICE",
        dest="service",
        type=str,
        default="",
        help="Service description ($SERVICEDESC$); omit for host notifications.",
    )
    arg_parser.add_argument(
        "--problem-id",
        "--serviceproblemid",
        metavar="ID",
        dest="problem_id",
        type=str,
        default="",
        help=(
            "Problem instance id ($SERVICEPROBLEMID$ or $LASTSERVICEPROBLEMID$ on recovery).\n"
            "Distinguishes successive problems of the same service."
        ),
    )
    arg_parser.add_argument(
        "--subject",
        metavar="TEXT",
        dest="subject",
        type=str,
        default="",
        help="Ticket short description.",
    )
    arg_parser.add_argument(
        "--state",
        metavar="STATE",
        dest="state",
        type=str,
        default="",
        help="Host or service state ($HOSTSTATE$ / $SERVICESTATE$).",
    )
    arg_parser.add_argument(
        "--ack-author",
        "--ackauthor",
        metavar="USER",
        dest="ack_author",
        type=str,
        default="",
        help="Acknowledging user ($NOTIFICATIONAUTHOR$).",
    )
    arg_parser.add_argument(
        "--ack-comment",
        "--ackcomment",
        metavar="TEXT",
        dest="ack_comment",
        type=str,
        default="",
        help="Acknowledgement comment ($NOTIFICATIONCOMMENT$).",
    )
    arg_parser.add_argument(
        "--site",
        metavar="SITE",
        dest="site",
        type=str,
        default=os.environ.get("OMD_SITE", ""),
        help="Monitoring site (OMD site). Defaults to $OMD_SITE.",
    )
    arg_parser.add_argument(
        "--field",
        metavar="KEY=VALUE",
        dest="fields",
        type=parse_field,
        action="append",
        default=[],
        help="Override a ticket field on creation, e.g. 'urgency=2'. May be repeated.",
    )
    return arg_parser


def main(argv: list[str] | None = None, stdin: typing.TextIO | None = None) -> int:
    args = Args(**vars(build_parser().parse_args(argv)))
    stdin = sys.stdin if stdin is None else stdin

    setup_logging(args.log_level)
    logging.info("log_level=%s", args.log_level)
    logging.info("type=%s", args.type.value)
    logging.info("host=%s", args.host)
    logging.info("service=%s", args.service)
    logging.info("problem_id=%s", args.problem_id)
    logging.info("site=%s", args.site)
    logging.info("fields=%s", args.fields)

    description = "" if stdin.isatty() else stdin.read().strip()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.critical("%s", e)
        return 2

    event = AlertEvent(
        type=args.type,
        host=args.host,
        service=args.service,
        problem_id=args.problem_id,
        subject=args.subject,
        description=description,
        state=args.state,
        ack_author=args.ack_author,
        ack_comment=args.ack_comment,
        site=args.site,
        fields=dict(args.fields),
    )

    with requests.Session() as session:
        reconciler = ForwardReconciler(config, IncidentStore(config.cachedir), SnowClient(config.servicenow, session))
        outcome = reconciler.handle(event)

    print(outcome)
    if not outcome.failed:
        return 0

    try:
        send_error_mail(config, f"{event.type.value} {outcome.key}: {outcome.message}", description, str(outcome))
    except (smtplib.SMTPException, OSError) as e:
        logging.error("Could not send error mail: %s", e)
    return 1


if __name__ == "__main__":
    sys.exit(main())
