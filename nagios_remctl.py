#!venv/bin/python3

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import re
import sys

from nagios_client import LivestatusReader, NagiosCommander
from nagios_snow import add_common_arguments, environ_or_required, setup_logging
from nagios_snow_config import ConfigError, load_config

# Restricted surface for callers coming through remctl: plain host names, and service
# descriptions without the characters that delimit external commands.
HOST_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SERVICE_PATTERN = re.compile(r"^[^;\n\r\x00]+$")


@dataclasses.dataclass(frozen=True)
class Args:
    log_level: str
    config: str | None
    command: str
    host: str
    service: str | None
    comment: str
    user: str
    site: str
    hours: float = 0
    minutes: float = 0
    start: int | None = None


def host_name(value: str) -> str:
    if not HOST_PATTERN.match(value):
        msg = f"Invalid host name: {value!r}"
        raise argparse.ArgumentTypeError(msg)
    return value


def service_name(value: str) -> str:
    if not SERVICE_PATTERN.match(value):
        msg = f"Invalid service name: {value!r}"
        raise argparse.ArgumentTypeError(msg)
    return value


def comment_text(value: str) -> str:
    if not value.strip() or "\n" in value or "\r" in value:
        msg = "Comment must be a single non-empty line."
        raise argparse.ArgumentTypeError(msg)
    return value


def build_parser() -> argparse.ArgumentParser:
    arg_parser = argparse.ArgumentParser(
        description="nagios-remctl: acknowledge, schedule downtime for, or recheck a Nagios host or service.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    add_common_arguments(arg_parser)
    arg_parser.add_argument(
        "--user",
        metavar="USER",
        dest="user",
        type=str,
        **environ_or_required("REMOTE_USER"),
        help="Requesting user. Defaults to $REMOTE_USER, as set by remctl.",
    )
    arg_parser.add_argument(
        "--site",
        metavar="SITE",
        dest="site",
        type=str,
        default=os.environ.get("OMD_SITE", ""),
        help="Monitoring site (OMD site). Defaults to $OMD_SITE.",
    )

    subparsers = arg_parser.add_subparsers(dest="command", required=True)

    def add_target(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("host", metavar="HOST", type=host_name)
        parser.add_argument("service", metavar="SERVICE", type=service_name, nargs="?", default=None)

    ack_parser = subparsers.add_parser("ack", help="Acknowledge a host or service problem.")
    add_target(ack_parser)
    ack_parser.add_argument("--comment", dest="comment", type=comment_text, required=True)

    downtime_parser = subparsers.add_parser("downtime", help="Schedule fixed downtime.")
    add_target(downtime_parser)
    downtime_parser.add_argument("--comment", dest="comment", type=comment_text, required=True)
    downtime_parser.add_argument("--hours", dest="hours", type=float, required=True)
    downtime_parser.add_argument("--start", dest="start", type=int, default=None, help="Seconds since the epoch.")

    recheck_parser = subparsers.add_parser("recheck", help="Force an immediate (or delayed) check.")
    add_target(recheck_parser)
    recheck_parser.add_argument("--minutes", dest="minutes", type=float, default=0)
    recheck_parser.set_defaults(comment="")
    return arg_parser


def main(argv: list[str] | None = None) -> int:
    args = Args(**vars(build_parser().parse_args(argv)))

    setup_logging(args.log_level)
    logging.info("command=%s", args.command)
    logging.info("host=%s", args.host)
    logging.info("service=%s", args.service)
    logging.info("user=%s", args.user)
    logging.info("site=%s", args.site)

    if args.hours < 0 or args.minutes < 0:
        logging.critical("Durations must not be negative.")
        return 2

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.critical("%s", e)
        return 2

    target = f"{args.host}/{args.service}" if args.service else args.host
    if not LivestatusReader(config).exists(args.site, args.host, args.service or ""):
        logging.error("%s is not monitored, or Nagios cannot be reached", target)
        return 1

    commander = NagiosCommander(config)
    try:
        if args.command == "ack":
            commander.acknowledge(args.site, args.host, args.service, args.comment, args.user)
        elif args.command == "downtime":
            commander.downtime(
                args.site, args.host, args.service, args.comment, args.user, hours=args.hours, start=args.start
            )
        else:
            commander.schedule_check(args.site, args.host, args.service, args.user, minutes=args.minutes)
    except (OSError, ValueError) as e:
        logging.error("Could not %s %s: %s", args.command, target, e)
        return 1

    print(f"{args.command} {target}: submitted for {args.user}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
