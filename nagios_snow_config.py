from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import typing

import yaml

DEFAULT_CONFIG_FILE = "/etc/nagios-snow/config.yaml"
CONFIG_ENV = "NAGIOS_SNOW_CONFIG"


class ConfigError(Exception):
    pass


# Per-site socket or pipe location.
# The default site uses "default"; an OMD site uses "<prefix>/<site>/<suffix>".
@dataclasses.dataclass(frozen=True)
class SitePath:
    default: str
    prefix: str = "/omd/sites"
    suffix: str = ""

    def for_site(self, site: str | None) -> str:
        if not site or site == "default":
            return self.default
        return str(pathlib.Path(self.prefix) / site / self.suffix)


@dataclasses.dataclass(frozen=True)
class NagiosConfig:
    url: str = ""
    style: typing.Literal["nagios", "check_mk"] = "nagios"
    site: str = ""
    query_timeout: float = 10.0
    livestatus: SitePath = SitePath("/var/run/nagios/rw/live", "/omd/sites", "tmp/run/live")
    cmd_pipe: SitePath = SitePath("/var/spool/nagios/cmd/nagios.cmd", "/omd/sites", "tmp/run/nagios.cmd")


@dataclasses.dataclass(frozen=True)
class SnowConfig:
    url: str
    username: str = ""
    password: str = ""
    timeout: float = 30.0
    verify: bool = True

    def __repr__(self) -> str:
        password = f"{self.password[:3]}...{self.password[-3:]}" if self.password else ""
        return f"SnowConfig(url={self.url}, username={self.username}, password={password}, timeout={self.timeout})"


@dataclasses.dataclass(frozen=True)
class ErrorMailConfig:
    to: str = ""
    sender: str = ""
    subject_prefix: str = "nagios"
    smtp_host: str = ""


@dataclasses.dataclass(frozen=True)
class PolicyConfig:
    # Treat "no problem id" and problem id 0 as the same incident.
    collapse_zero_problem_id: bool = True
    # Clear the ticket assignment when a closed ticket is re-opened.
    reopen_resets_assignment: bool = False


@dataclasses.dataclass(frozen=True)
class Config:
    cachedir: pathlib.Path
    nagios: NagiosConfig
    servicenow: SnowConfig
    error_mail: ErrorMailConfig
    ticket: dict[str, str]
    policy: PolicyConfig

    # Identity this suite opens tickets as; tickets with another caller are never touched.
    @property
    def caller_id(self) -> str:
        return self.ticket["caller_id"]

    @property
    def watch_list(self) -> str:
        return self.ticket.get("watch_list", "")


def _site_path(data: dict[str, typing.Any] | str | None, fallback: SitePath) -> SitePath:
    if data is None:
        return fallback
    if isinstance(data, str):
        return dataclasses.replace(fallback, default=data)
    return SitePath(
        default=str(data.get("default") or fallback.default),
        prefix=str(data.get("prefix") or fallback.prefix),
        suffix=str(data.get("suffix") or fallback.suffix),
    )


def _as_bool(value: typing.Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


# Build a Config from the parsed YAML document.
# Environment overrides: SNOW_USERNAME, SNOW_PASSWORD.
def parse_config(data: dict[str, typing.Any], environ: typing.Mapping[str, str] | None = None) -> Config:
    environ = os.environ if environ is None else environ

    nagios_data = data.get("nagios") or {}
    defaults = NagiosConfig()
    style = str(nagios_data.get("style") or defaults.style).lower()
    if style not in {"nagios", "check_mk"}:
        msg = f"Invalid nagios.style: {style}. Expected 'nagios' or 'check_mk'."
        raise ConfigError(msg)
    nagios = NagiosConfig(
        url=str(nagios_data.get("url") or "").rstrip("/"),
        style=typing.cast(typing.Literal["nagios", "check_mk"], style),
        site=str(nagios_data.get("site") or ""),
        query_timeout=float(nagios_data.get("query_timeout") or defaults.query_timeout),
        livestatus=_site_path(nagios_data.get("livestatus"), defaults.livestatus),
        cmd_pipe=_site_path(nagios_data.get("cmdPipe", nagios_data.get("cmd_pipe")), defaults.cmd_pipe),
    )

    snow_data = data.get("servicenow") or {}
    if not snow_data.get("url"):
        msg = "Missing servicenow.url in configuration."
        raise ConfigError(msg)
    servicenow = SnowConfig(
        url=str(snow_data["url"]).rstrip("/"),
        username=environ.get("SNOW_USERNAME") or str(snow_data.get("username") or ""),
        password=environ.get("SNOW_PASSWORD") or str(snow_data.get("password") or ""),
        timeout=float(snow_data.get("timeout") or 30.0),
        verify=_as_bool(snow_data.get("verify", True)),
    )

    mail_data = data.get("errorMail") or nagios_data.get("errorMail") or {}
    error_mail = ErrorMailConfig(
        to=str(mail_data.get("to") or ""),
        sender=str(mail_data.get("from") or ""),
        subject_prefix=str(mail_data.get("subjectPrefix") or "nagios"),
        smtp_host=str(mail_data.get("smtpHost") or ""),
    )

    ticket = {str(k): "" if v is None else str(v) for k, v in (data.get("ticket") or {}).items()}
    if not ticket.get("caller_id"):
        msg = "Missing ticket.caller_id in configuration; it identifies tickets opened by this suite."
        raise ConfigError(msg)

    policy_data = data.get("policy") or {}
    policy = PolicyConfig(
        collapse_zero_problem_id=_as_bool(policy_data.get("collapse_zero_problem_id", True)),
        reopen_resets_assignment=_as_bool(policy_data.get("reopen_resets_assignment", False)),
    )

    return Config(
        cachedir=pathlib.Path(str(data.get("cachedir") or "/srv/monitor/nagios-incidents")),
        nagios=nagios,
        servicenow=servicenow,
        error_mail=error_mail,
        ticket=ticket,
        policy=policy,
    )


def load_config(path: str | None = None) -> Config:
    config_path = pathlib.Path(path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE)
    logging.info("Loading configuration from %s", config_path)
    try:
        with config_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        msg = f"Could not read configuration {config_path}: {e}"
        raise ConfigError(msg) from e
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {config_path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(data, dict):
        msg = f"Configuration {config_path} must be a YAML mapping."
        raise ConfigError(msg)
    return parse_config(data)
