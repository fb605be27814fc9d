from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class BackingUnavailable(RelayError):
    """The durable credential store is unreachable or a call against it failed."""


class DecodeError(RelayError, ValueError):
    """A stored credential record could not be decoded."""


class ForwardError(RelayError):
    """Forwarding cannot proceed; rendered to the caller as a 500 response."""


class InvalidCredential(ForwardError):
    pass


class UpstreamUnreachable(ForwardError):
    pass


class UpstreamReadError(ForwardError):
    pass
