from __future__ import annotations

import json
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from gemini_relay.errors import DecodeError

MIN_CREDENTIAL_LENGTH = 8


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    secret: str
    route: str = ""

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)

    def to_json(self) -> str:
        payload = {"key": self.secret}
        if self.route:
            payload["proxy"] = self.route
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"))


EMPTY_CREDENTIAL = CredentialRecord(secret="")


class StoredCredential(BaseModel):
    """Wire shape of one element of the durable credential list."""

    model_config = ConfigDict(extra="ignore", strict=True)

    key: str = Field(min_length=1)
    proxy: str = ""

    def to_record(self) -> CredentialRecord:
        return CredentialRecord(secret=self.key, route=self.proxy)


def decode_credential_record(raw: bytes | str) -> CredentialRecord:
    try:
        decoded = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        stored = StoredCredential.model_validate_json(decoded)
    except UnicodeDecodeError as exc:
        raise DecodeError(f"invalid credential record: {exc.reason}") from exc
    except ValidationError as exc:
        raise DecodeError(f"invalid credential record: {_describe(exc)}") from exc
    return stored.to_record()


def _describe(exc: ValidationError) -> str:
    # Never echo the input: it is (or contains) a secret.
    problems = []
    for error in exc.errors(include_url=False, include_input=False):
        location = ".".join(str(part) for part in error["loc"]) or "record"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def mask_secret(secret: str) -> str:
    if not secret:
        return "<empty>"
    if len(secret) < MIN_CREDENTIAL_LENGTH:
        return "<too_short>"
    return f"{secret[:4]}****{secret[-4:]}"
