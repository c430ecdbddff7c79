from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import re
import tempfile
import urllib.parse

INCIDENT_SUFFIX = ".incident"
ACK_YES = "yes"


class IncidentVanishedError(FileNotFoundError):
    pass


# Canonical ticket number: "INC" followed by 12 zero-padded digits.
# Accepts "42", "INC42", "INC000000000042". Returns None for anything else, including 0.
def normalize_ticket_number(value: str | None) -> str | None:
    if not value:
        return None
    match = re.match(r"^(?:INC)?(\d+)$", value.strip())
    if not match or not int(match.group(1)):
        return None
    return f"INC{int(match.group(1)):012d}"


def ticket_number_short(value: str) -> str:
    return re.sub(r"^(INC)?0+", "", value)


# Key layout:
#   host
#   host:service:problem_id
#   host:service:            (only when collapse_zero_problem_id is off and no id was given)
# A service key always ends in the problem id field, so services may contain ':'.
def make_key(host: str, service: str = "", problem_id: str = "", *, collapse_zero_problem_id: bool = True) -> str:
    if not host:
        msg = "Incident key needs a host."
        raise ValueError(msg)
    if not service:
        return host
    if not problem_id:
        return f"{host}:{service}:0" if collapse_zero_problem_id else f"{host}:{service}:"
    return f"{host}:{service}:{problem_id}"


def split_key(key: str) -> tuple[str, str, str]:
    parts = key.split(":")
    if len(parts) == 1:
        return parts[0], "", ""
    if len(parts) == 2:
        return parts[0], parts[1], ""
    return parts[0], ":".join(parts[1:-1]), parts[-1]


@dataclasses.dataclass
class Incident:
    key: str
    path: pathlib.Path
    ticket_number: str | None = None
    ack: str = ""
    site: str = ""

    @property
    def host(self) -> str:
        return split_key(self.key)[0]

    @property
    def service(self) -> str:
        return split_key(self.key)[1]

    @property
    def problem_id(self) -> str:
        return split_key(self.key)[2]

    @property
    def acknowledged(self) -> bool:
        return self.ack == ACK_YES

    def set_ticket_number(self, value: str | None) -> str | None:
        self.ticket_number = normalize_ticket_number(value)
        return self.ticket_number

    def serialize(self) -> str:
        return (
            f"ACK={self.ack or ''}\n"
            f"INC={self.ticket_number or ''}\n"
            f"SITE={self.site or ''}\n"
            f"SNAME={self.key}\n"
        )

    def __str__(self) -> str:
        return f"({self.key},{self.ticket_number or '-'},ack={self.ack or 'no'})"


# One file per incident, "<quoted key>.incident", in a single directory.
# No locking: every writer is expected to be idempotent.
class IncidentStore:
    def __init__(self, directory: str | pathlib.Path) -> None:
        self.directory: pathlib.Path = pathlib.Path(directory)

    def path_for(self, key: str) -> pathlib.Path:
        return self.directory / f"{urllib.parse.quote(key, safe=':@+=,')}{INCIDENT_SUFFIX}"

    def create(self, key: str) -> Incident:
        return Incident(key=key, path=self.path_for(key))

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read(self, key: str) -> Incident | None:
        incident = self.create(key)
        try:
            text = incident.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logging.warning("No incident on record for %s (%s)", key, incident.path)
            return None

        sname = None
        for line in text.splitlines():
            name, sep, value = line.partition("=")
            if not sep:
                continue
            if name == "ACK":
                incident.ack = value
            elif name == "INC":
                if value and incident.set_ticket_number(value) is None:
                    msg = f"Invalid ticket number {value!r} in {incident.path}"
                    raise ValueError(msg)
            elif name == "SITE":
                incident.site = value
            elif name == "SNAME":
                sname = value

        if not sname:
            msg = f"Missing SNAME in {incident.path}"
            raise ValueError(msg)
        if sname != key:
            logging.warning("Incident file %s names %s, expected %s", incident.path, sname, key)
        return incident

    # Atomic replace: temp file in the same directory, fsync, rename.
    def write(self, incident: Incident, *, must_exist: bool = False) -> None:
        if must_exist and not incident.path.exists():
            msg = f"Incident {incident.key} was removed while in use: {incident.path}"
            raise IncidentVanishedError(msg)

        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=INCIDENT_SUFFIX)
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(incident.serialize())
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, incident.path)
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise
        logging.debug("Wrote incident %s to %s", incident, incident.path)

    # Any OSError propagates; an incident must never silently fail to clear.
    def delete(self, incident: Incident) -> None:
        incident.path.unlink()
        logging.debug("Removed incident %s (%s)", incident, incident.path)

    def list_all(self) -> list[Incident]:
        incidents: list[Incident] = []
        for path in sorted(self.directory.glob(f"*{INCIDENT_SUFFIX}")):
            if path.name.startswith(".tmp-"):
                continue
            key = urllib.parse.unquote(path.name.removesuffix(INCIDENT_SUFFIX))
            try:
                incident = self.read(key)
            except (OSError, ValueError) as e:
                logging.warning("Skipping unreadable incident file %s: %s", path, e)
                continue
            if incident is not None:
                incidents.append(incident)
        return incidents
