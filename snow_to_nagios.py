#!venv/bin/python3

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys

import requests

from incident_store import IncidentStore
from nagios_client import LivestatusReader, NagiosCommander
from nagios_snow import BackwardReconciler, add_common_arguments, setup_logging
from nagios_snow_config import ConfigError, load_config
from snow_client import SnowClient


@dataclasses.dataclass(frozen=True)
class Args:
    log_level: str
    config: str | None


def main(argv: list[str] | None = None) -> int:
    arg_parser = argparse.ArgumentParser(
        description=(
            "snow-to-nagios: reconcile every open incident against Service Now and Nagios.\n"
            "Closes tickets whose problem cleared, re-opens tickets closed while the problem persists,\n"
            "and acknowledges in Nagios the problems that were assigned in Service Now."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    add_common_arguments(arg_parser)
    args = Args(**vars(arg_parser.parse_args(argv)))

    setup_logging(args.log_level)
    logging.info("log_level=%s", args.log_level)
    logging.info("config=%s", args.config)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.critical("%s", e)
        return 2
    logging.info("cachedir=%s", config.cachedir)
    logging.info("servicenow=%r", config.servicenow)

    with requests.Session() as session:
        reconciler = BackwardReconciler(
            config,
            IncidentStore(config.cachedir),
            SnowClient(config.servicenow, session),
            LivestatusReader(config),
            NagiosCommander(config),
        )
        outcomes = reconciler.run()

    for outcome in outcomes:
        print(outcome)

    failed = [outcome for outcome in outcomes if outcome.failed]
    logging.info("len(outcomes)=%d", len(outcomes))
    logging.info("len(failed)=%d", len(failed))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
