#!venv/bin/python3

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
import typing

from incident_store import Incident, IncidentStore
from nagios_client import LivestatusError, LivestatusReader, Problem, nagios_url
from nagios_snow import add_common_arguments, setup_logging
from nagios_snow_config import ConfigError, load_config

if typing.TYPE_CHECKING:
    from nagios_snow_config import Config

HOST_STATES = {0: "UP", 1: "DOWN", 2: "UNREACHABLE"}
SERVICE_STATES = {0: "OK", 1: "WARNING", 2: "CRITICAL", 3: "UNKNOWN"}


@dataclasses.dataclass(frozen=True)
class Args:
    log_level: str
    config: str | None
    site: str
    incidents: bool


# One line per problem, then its comments; comments older than the last state change are marked OLD.
def format_problem(problem: Problem, incidents: list[Incident]) -> list[str]:
    states = SERVICE_STATES if problem.service else HOST_STATES
    lines = [
        "{:<11} {:<24.24} {:<28.28} {:<3} {:<15} {}".format(
            states.get(problem.state, str(problem.state)),
            problem.host,
            problem.service or "-",
            "ACK" if problem.acknowledged else "",
            ",".join(incident.ticket_number or "(unknown)" for incident in incidents) or "-",
            problem.output,
        )
    ]
    lines.extend(
        f"    {'' if problem.is_fresh(comment) else '[OLD] '}{comment}"
        for comment in sorted(problem.comments, key=lambda comment: comment.entry_time)
    )
    return lines


def format_incident(config: Config, incident: Incident) -> list[str]:
    return [
        "{:>15}  Host: {:<14.14}  Service: {:<14.14}  Site: {:<10}".format(
            incident.ticket_number or "(unknown)",
            incident.host,
            incident.service or "()",
            incident.site or "(default)",
        ),
        f" Filename: {incident.path}",
        f" {nagios_url(config, incident.host, incident.service, incident.site)}",
    ]


def report(config: Config, reader: LivestatusReader, store: IncidentStore, site: str) -> list[str]:
    incidents = {incident.key: incident for incident in store.list_all()}
    by_target: dict[tuple[str, str], list[Incident]] = {}
    for incident in incidents.values():
        by_target.setdefault((incident.host, incident.service), []).append(incident)
    problems = reader.get_problems(site)

    hosts = [problem for problem in problems if not problem.service]
    services = [problem for problem in problems if problem.service]
    lines = [f"Hosts down: {len(hosts)}  Services with problems: {len(services)}", ""]
    for problem in [*hosts, *services]:
        lines.extend(format_problem(problem, by_target.get((problem.host, problem.service), [])))

    active = {(problem.host, problem.service) for problem in problems}
    untracked = [incident for incident in incidents.values() if (incident.host, incident.service) not in active]
    if untracked:
        lines.extend(["", "Incidents without a current problem:"])
        lines.extend(f"  {incident.ticket_number or '(unknown)'} {incident.key}" for incident in untracked)
    return lines


def main(argv: list[str] | None = None) -> int:
    arg_parser = argparse.ArgumentParser(
        description="nagios-report: digest of current Nagios outages and the tickets tracking them.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    add_common_arguments(arg_parser)
    arg_parser.add_argument(
        "--site",
        metavar="SITE",
        dest="site",
        type=str,
        default=os.environ.get("OMD_SITE", ""),
        help="Monitoring site (OMD site). Defaults to $OMD_SITE.",
    )
    arg_parser.add_argument(
        "--incidents",
        dest="incidents",
        action="store_true",
        help="List the incidents on record instead of the current problems.",
    )
    args = Args(**vars(arg_parser.parse_args(argv)))

    setup_logging(args.log_level)
    logging.info("log_level=%s", args.log_level)
    logging.info("site=%s", args.site)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.critical("%s", e)
        return 2

    store = IncidentStore(config.cachedir)
    if args.incidents:
        for incident in store.list_all():
            print("\n".join(format_incident(config, incident)))
        return 0

    try:
        lines = report(config, LivestatusReader(config), store, args.site)
    except LivestatusError as e:
        logging.error("%s", e)
        return 1
    print("\n".join(lines))
    return 0


if __name__ == "__main__":
    sys.exit(main())
