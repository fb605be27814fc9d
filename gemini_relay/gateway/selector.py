from __future__ import annotations

import asyncio
import logging

from gemini_relay.credentials import EMPTY_CREDENTIAL, CredentialRecord
from gemini_relay.errors import BackingUnavailable, DecodeError
from gemini_relay.gateway.credential_store import CredentialStore
from gemini_relay.gateway.fallback import FallbackCredentialSource
from gemini_relay.trace import get_trace_id

logger = logging.getLogger("uvicorn.error")


class CredentialSelector:
    """Round-robin credential selection over the durable pool, then the fallback list.

    Both branches advance the same cursor under the same lock, so concurrent
    callers never observe the same position and switching between branches
    does not reset the rotation.
    """

    def __init__(
        self,
        store: CredentialStore,
        fallback: FallbackCredentialSource,
    ) -> None:
        self._store = store
        self._fallback = fallback
        self._lock = asyncio.Lock()
        self._cursor = 0

    async def next(self) -> CredentialRecord:
        count = await self._store.count()
        if count:
            async with self._lock:
                self._cursor = (self._cursor + 1) % count
                position = self._cursor
            try:
                record = await self._store.get(position)
            except (BackingUnavailable, DecodeError) as exc:
                logger.error(
                    "credential_store_fetch_failed position=%d error=%s fallback=config trace_id=%s",
                    position,
                    exc,
                    get_trace_id(),
                )
            else:
                logger.info(
                    "credential_selected source=store position=%d key=%s proxy=%s trace_id=%s",
                    position,
                    record.masked,
                    record.route,
                    get_trace_id(),
                )
                return record
        elif count is None:
            logger.info(
                "credential_store_unavailable fallback=config trace_id=%s",
                get_trace_id(),
            )
        else:
            logger.info(
                "credential_store_empty fallback=config trace_id=%s",
                get_trace_id(),
            )

        return await self._next_fallback()

    async def _next_fallback(self) -> CredentialRecord:
        records = self._fallback.load()
        if not records:
            logger.warning(
                "credential_pool_exhausted reason=no_fallback_credentials trace_id=%s",
                get_trace_id(),
            )
            return EMPTY_CREDENTIAL

        async with self._lock:
            position = self._cursor % len(records)
            self._cursor = (self._cursor + 1) % len(records)
        record = records[position]
        logger.info(
            "credential_selected source=config position=%d key=%s trace_id=%s",
            position,
            record.masked,
            get_trace_id(),
        )
        return record
