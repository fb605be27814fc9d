from __future__ import annotations

import logging
import os
import re
from typing import Mapping

from gemini_relay.credentials import CredentialRecord, decode_credential_record
from gemini_relay.errors import DecodeError

logger = logging.getLogger("uvicorn.error")

_ENV_REFERENCE = re.compile(
    r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)


def expand_env_references(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Replace ``$NAME`` and ``${NAME}`` with environment values; unset names become ''."""
    env = os.environ if environ is None else environ

    def _substitute(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        return env.get(name, "")

    return _ENV_REFERENCE.sub(_substitute, value)


def split_credential_entries(value: str) -> list[str]:
    # Commas inside a JSON object (or a quoted string within it) do not split entries.
    entries: list[str] = []
    current: list[str] = []
    depth = 0
    in_string = False
    escaped = False
    for char in value:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
        elif char == "," and depth == 0:
            entries.append("".join(current))
            current = []
            continue
        current.append(char)
    entries.append("".join(current))
    return [entry.strip() for entry in entries if entry.strip()]


class FallbackCredentialSource:
    """Credentials taken from the process configuration (``API_KEY``).

    Entries are comma separated. A bare entry is a secret used for direct
    egress; an entry written as a JSON object (``{"key": ..., "proxy": ...}``)
    may also carry a route.
    """

    def __init__(self, raw_value: str, environ: Mapping[str, str] | None = None) -> None:
        self._raw_value = raw_value
        self._environ = environ

    def load(self) -> list[CredentialRecord]:
        if not self._raw_value:
            return []
        expanded = expand_env_references(self._raw_value, self._environ)
        records: list[CredentialRecord] = []
        for index, entry in enumerate(split_credential_entries(expanded)):
            if not entry.startswith("{"):
                records.append(CredentialRecord(secret=entry))
                continue
            try:
                records.append(decode_credential_record(entry))
            except DecodeError as exc:
                logger.warning(
                    "fallback_credential_skipped index=%d error=%s",
                    index,
                    exc,
                )
        return records
