from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from gemini_relay.credentials import MIN_CREDENTIAL_LENGTH, CredentialRecord
from gemini_relay.errors import InvalidCredential, UpstreamReadError, UpstreamUnreachable
from gemini_relay.gateway.selector import CredentialSelector
from gemini_relay.settings import DEFAULT_UPSTREAM_BASE_URL
from gemini_relay.trace import get_trace_id

CREDENTIAL_QUERY_PARAM = "key"

HOP_BY_HOP_REQUEST_HEADERS = {
    "host",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RequestDescriptor:
    method: str
    path: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    content_type: str = ""
    credential_override: str = ""


@dataclass(frozen=True, slots=True)
class UpstreamResponse:
    status_code: int
    headers: tuple[tuple[str, str], ...]
    body: bytes

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


ClientFactory = Callable[[str | None], httpx.AsyncClient]


def build_upstream_url(base_url: str, path: str, secret: str) -> str:
    """Join ``path`` onto ``base_url`` and make ``secret`` the only credential parameter."""
    parts = urlsplit(f"{base_url.rstrip('/')}{path}")
    query = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name != CREDENTIAL_QUERY_PARAM
    ]
    query.append((CREDENTIAL_QUERY_PARAM, secret))
    query.sort(key=lambda item: item[0])
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


def build_upstream_headers(
    incoming: Sequence[tuple[str, str]],
    content_type: str,
) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    if content_type:
        headers.append(("Content-Type", content_type))
    accepts_encoding = False
    for name, value in incoming:
        lowered = name.lower()
        if lowered == "content-type" or lowered in HOP_BY_HOP_REQUEST_HEADERS:
            continue
        accepts_encoding = accepts_encoding or lowered == "accept-encoding"
        headers.append((name, value))
    # The body is relayed undecoded, so never ask for a compression the caller did not.
    if not accepts_encoding:
        headers.append(("Accept-Encoding", "identity"))
    return headers


def _request_error_details(exc: httpx.RequestError) -> str:
    message = str(exc).strip() or repr(exc)
    return f"{exc.__class__.__name__}: {message}"


def build_default_client_factory(timeout_seconds: float) -> ClientFactory:
    def _create(route: str | None) -> httpx.AsyncClient:
        timeout = httpx.Timeout(max(0.1, float(timeout_seconds)))
        if route:
            return httpx.AsyncClient(timeout=timeout, proxy=route)
        return httpx.AsyncClient(timeout=timeout)

    return _create


class Forwarder:
    def __init__(
        self,
        selector: CredentialSelector,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        timeout_seconds: float = 30.0,
        routes_enabled: bool = False,
        create_client: ClientFactory | None = None,
    ) -> None:
        self._selector = selector
        self._base_url = base_url
        self._routes_enabled = routes_enabled
        self._create_client = create_client or build_default_client_factory(
            timeout_seconds
        )
        self.client = self._create_client(None)
        self._route_clients: dict[str, httpx.AsyncClient] = {}

    async def resolve_credential(self, override: str) -> CredentialRecord:
        if override:
            return CredentialRecord(secret=override)
        return await self._selector.next()

    async def forward(self, descriptor: RequestDescriptor) -> UpstreamResponse:
        credential = await self.resolve_credential(descriptor.credential_override)
        trace_id = get_trace_id()
        if len(credential.secret) < MIN_CREDENTIAL_LENGTH:
            raise InvalidCredential(f"invalid api key: {credential.masked}")

        url = build_upstream_url(self._base_url, descriptor.path, credential.secret)
        logger.info(
            "upstream_request method=%s key=%s proxy=%s url=%s trace_id=%s",
            descriptor.method,
            credential.masked,
            credential.route or "-",
            build_upstream_url(self._base_url, descriptor.path, credential.masked),
            trace_id,
        )

        try:
            client = self._client_for(credential)
        except (ValueError, httpx.InvalidURL) as exc:
            details = f"{exc.__class__.__name__}: {exc}"
            logger.error(
                "upstream_client_failed proxy=%s error=%s trace_id=%s",
                credential.route,
                details,
                trace_id,
            )
            raise UpstreamUnreachable(f"could not create client for proxy: {details}") from exc

        started = time.perf_counter()
        try:
            request = client.build_request(
                method=descriptor.method,
                url=url,
                content=descriptor.body,
                headers=build_upstream_headers(
                    descriptor.headers, descriptor.content_type
                ),
            )
            upstream = await client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.error(
                "upstream_request_failed error=%s trace_id=%s", details, trace_id
            )
            raise UpstreamUnreachable(f"could not send request: {details}") from exc

        try:
            chunks = [chunk async for chunk in upstream.aiter_raw()]
        except (httpx.RequestError, httpx.StreamError) as exc:
            details = (
                _request_error_details(exc)
                if isinstance(exc, httpx.RequestError)
                else f"{exc.__class__.__name__}: {exc}"
            )
            logger.error(
                "upstream_read_failed status=%d error=%s trace_id=%s",
                upstream.status_code,
                details,
                trace_id,
            )
            raise UpstreamReadError(f"could not read response body: {details}") from exc
        finally:
            await upstream.aclose()

        logger.info(
            "upstream_response status=%d bytes=%d elapsed_ms=%.2f trace_id=%s",
            upstream.status_code,
            sum(len(chunk) for chunk in chunks),
            (time.perf_counter() - started) * 1000.0,
            trace_id,
        )
        return UpstreamResponse(
            status_code=upstream.status_code,
            headers=tuple(upstream.headers.multi_items()),
            body=b"".join(chunks),
        )

    def _client_for(self, credential: CredentialRecord) -> httpx.AsyncClient:
        if not self._routes_enabled or not credential.route:
            return self.client
        client = self._route_clients.get(credential.route)
        if client is None:
            client = self._create_client(credential.route)
            self._route_clients[credential.route] = client
        return client

    async def close(self) -> None:
        await self.client.aclose()
        for client in self._route_clients.values():
            await client.aclose()
        self._route_clients.clear()
