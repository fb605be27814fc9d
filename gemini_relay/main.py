from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from gemini_relay.credentials import mask_secret
from gemini_relay.errors import BackingUnavailable, ForwardError
from gemini_relay.gateway.credential_store import CredentialStore, CredentialStoreConfig
from gemini_relay.gateway.fallback import FallbackCredentialSource
from gemini_relay.gateway.forwarder import (
    CREDENTIAL_QUERY_PARAM,
    Forwarder,
    RequestDescriptor,
    UpstreamResponse,
)
from gemini_relay.gateway.selector import CredentialSelector
from gemini_relay.settings import get_settings
from gemini_relay.trace import bind_trace_id, get_trace_id

# Connection framing is recomputed by the ASGI server for the relayed body.
HOP_BY_HOP_RESPONSE_HEADERS = {
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
RELAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
SOURCE_UPSTREAM = "gemini"
SOURCE_SELF = "agent"

app = FastAPI(
    title="Gemini Key Relay",
    description="Relay to the Gemini API with a rotating, shared credential pool.",
    version="0.1.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    bind_trace_id()
    fallback = FallbackCredentialSource(settings.api_key)
    store = CredentialStore(CredentialStoreConfig.from_settings(settings))
    await store.connect()
    try:
        await store.initialize(fallback.load())
    except BackingUnavailable as exc:
        logger.error(
            "credential_store_init_failed error=%s trace_id=%s", exc, get_trace_id()
        )

    selector = CredentialSelector(store=store, fallback=fallback)
    app.state.settings = settings
    app.state.credential_store = store
    app.state.credential_selector = selector
    app.state.forwarder = Forwarder(
        selector=selector,
        base_url=settings.upstream_base_url,
        timeout_seconds=settings.upstream_timeout_seconds,
        routes_enabled=settings.credential_routes_enabled,
    )
    logger.info(
        (
            "startup complete upstream=%s credential_store_available=%s "
            "pool_key=%s routes_enabled=%s trace_id=%s"
        ),
        settings.upstream_base_url,
        store.available,
        store.pool_key,
        settings.credential_routes_enabled,
        get_trace_id(),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: Forwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    store: CredentialStore | None = getattr(app.state, "credential_store", None)
    if store is not None:
        await store.close()
    logger.info("shutdown complete")


def _build_descriptor(request: Request, body: bytes) -> RequestDescriptor:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return RequestDescriptor(
        method=request.method,
        path=path,
        headers=list(request.headers.items()),
        body=body,
        content_type=request.headers.get("content-type", ""),
        credential_override=request.query_params.get(CREDENTIAL_QUERY_PARAM, ""),
    )


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"code": 500, "body": f"Internal server error. details: {message}"},
        headers={"X-Trace-Id": get_trace_id(), "X-Content-From": SOURCE_SELF},
    )


def _relay_response(upstream: UpstreamResponse) -> Response:
    response = Response(content=upstream.body, status_code=upstream.status_code)
    for name, value in upstream.headers:
        if name.lower() in HOP_BY_HOP_RESPONSE_HEADERS:
            continue
        response.headers.append(name, value)
    if "content-type" not in response.headers:
        response.headers["Content-Type"] = "application/json"
    response.headers["X-Trace-Id"] = get_trace_id()
    response.headers["X-Content-From"] = SOURCE_UPSTREAM
    return response


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _forward_until_disconnected(
    request: Request, forwarder: Forwarder, descriptor: RequestDescriptor
) -> UpstreamResponse | None:
    forward_task = asyncio.create_task(forwarder.forward(descriptor))
    disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
    try:
        await asyncio.wait(
            {forward_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        disconnect_task.cancel()
        if not forward_task.done():
            forward_task.cancel()
            await asyncio.gather(forward_task, return_exceptions=True)
    if forward_task.cancelled():
        return None
    return forward_task.result()


@app.api_route("/{_path:path}", methods=RELAY_METHODS)
async def relay(_path: str, request: Request) -> Response:
    bind_trace_id()
    forwarder: Forwarder = app.state.forwarder
    override = request.query_params.get(CREDENTIAL_QUERY_PARAM, "")
    logger.info(
        "request_received method=%s path=%s query_keys=%s headers=%s override=%s trace_id=%s",
        request.method,
        request.url.path,
        sorted(request.query_params.keys()),
        sorted(set(request.headers.keys())),
        mask_secret(override) if override else "-",
        get_trace_id(),
    )

    descriptor = _build_descriptor(request, await request.body())
    try:
        upstream = await _forward_until_disconnected(request, forwarder, descriptor)
    except ForwardError as exc:
        logger.error(
            "forward_failed error_type=%s error=%s trace_id=%s",
            exc.__class__.__name__,
            exc,
            get_trace_id(),
        )
        return _error_response(str(exc))

    if upstream is None:
        logger.info(
            "request_cancelled reason=client_disconnected trace_id=%s", get_trace_id()
        )
        return Response(status_code=499)

    logger.info(
        "request_completed status=%d trace_id=%s", upstream.status_code, get_trace_id()
    )
    return _relay_response(upstream)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "gemini_relay.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
