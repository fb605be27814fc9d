from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from gemini_relay.credentials import CredentialRecord, decode_credential_record
from gemini_relay.errors import BackingUnavailable, DecodeError
from gemini_relay.settings import DEFAULT_CREDENTIAL_POOL_KEY, Settings
from gemini_relay.trace import get_trace_id

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class CredentialStoreConfig:
    host: str = "redis"
    port: int = 6379
    password: str = ""
    db: int = 0
    pool_key: str = DEFAULT_CREDENTIAL_POOL_KEY
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialStoreConfig:
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            pool_key=settings.credential_pool_key,
            connect_timeout_seconds=max(0.1, settings.redis_connect_timeout_seconds),
        )


class RedisClientFactory(Protocol):
    def __call__(self, config: CredentialStoreConfig) -> Any: ...


def build_redis_client(config: CredentialStoreConfig) -> Redis:
    return Redis(
        host=config.host,
        port=config.port,
        password=config.password or None,
        db=config.db,
        socket_connect_timeout=config.connect_timeout_seconds,
        socket_timeout=config.connect_timeout_seconds,
        decode_responses=False,
    )


class CredentialStore:
    """Durable, ordered credential pool kept in a single Redis list.

    The connection is attempted exactly once; after a failed attempt the store
    reports itself unavailable for the lifetime of the process and callers use
    the fallback credentials instead.
    """

    def __init__(
        self,
        config: CredentialStoreConfig,
        create_client: RedisClientFactory | None = None,
    ) -> None:
        self._config = config
        self._create_client = create_client or build_redis_client
        self._client: Any | None = None
        self._connect_lock = asyncio.Lock()
        self._connect_attempted = False

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def pool_key(self) -> str:
        return self._config.pool_key

    async def connect(self) -> bool:
        async with self._connect_lock:
            if self._connect_attempted:
                return self.available
            self._connect_attempted = True

            address = f"{self._config.host}:{self._config.port}"
            client: Any | None = None
            try:
                client = self._create_client(self._config)
                await asyncio.wait_for(
                    client.ping(), timeout=self._config.connect_timeout_seconds
                )
            except (RedisError, OSError, TimeoutError) as exc:
                logger.error(
                    "credential_store_connect_failed address=%s error=%s trace_id=%s",
                    address,
                    exc,
                    get_trace_id(),
                )
                if client is not None:
                    await _close_quietly(client)
                return False

            self._client = client
            logger.info(
                "credential_store_connected address=%s db=%d trace_id=%s",
                address,
                self._config.db,
                get_trace_id(),
            )
            return True

    async def initialize(self, records: Sequence[CredentialRecord]) -> int:
        client = self._client
        if client is None:
            logger.info(
                "credential_store_init_skipped reason=unavailable trace_id=%s",
                get_trace_id(),
            )
            return 0

        try:
            existing = int(await client.llen(self._config.pool_key))
        except RedisError as exc:
            raise BackingUnavailable(f"could not read pool size: {exc}") from exc
        if existing > 0:
            logger.info(
                "credential_store_init_skipped reason=already_initialized count=%d trace_id=%s",
                existing,
                get_trace_id(),
            )
            return 0
        if not records:
            logger.info(
                "credential_store_init_skipped reason=no_configured_credentials trace_id=%s",
                get_trace_id(),
            )
            return 0

        written = 0
        for index, record in enumerate(records):
            if not record.secret:
                logger.warning(
                    "credential_store_init_record_skipped index=%d reason=empty_secret trace_id=%s",
                    index,
                    get_trace_id(),
                )
                continue
            try:
                await client.rpush(self._config.pool_key, record.to_json())
            except RedisError as exc:
                raise BackingUnavailable(f"could not append credential: {exc}") from exc
            written += 1

        logger.info(
            "credential_store_initialized written=%d configured=%d trace_id=%s",
            written,
            len(records),
            get_trace_id(),
        )
        return written

    async def count(self) -> int | None:
        client = self._client
        if client is None:
            return None
        try:
            return int(await client.llen(self._config.pool_key))
        except RedisError as exc:
            logger.error(
                "credential_store_count_failed error=%s trace_id=%s",
                exc,
                get_trace_id(),
            )
            return None

    async def get(self, index: int) -> CredentialRecord:
        client = self._client
        if client is None:
            raise BackingUnavailable("credential store is not connected")
        try:
            raw = await client.lindex(self._config.pool_key, index)
        except RedisError as exc:
            raise BackingUnavailable(f"could not fetch credential {index}: {exc}") from exc
        if raw is None:
            raise BackingUnavailable(f"credential {index} does not exist")
        return decode_credential_record(raw)

    async def records(self) -> list[CredentialRecord]:
        client = self._client
        if client is None:
            raise BackingUnavailable("credential store is not connected")
        try:
            raw_items = await client.lrange(self._config.pool_key, 0, -1)
        except RedisError as exc:
            raise BackingUnavailable(f"could not list credentials: {exc}") from exc

        decoded: list[CredentialRecord] = []
        for index, raw in enumerate(raw_items):
            try:
                decoded.append(decode_credential_record(raw))
            except DecodeError as exc:
                logger.warning(
                    "credential_store_record_undecodable index=%d error=%s",
                    index,
                    exc,
                )
        return decoded

    async def close(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await _close_quietly(client)


async def _close_quietly(client: Any) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("credential_store_close_failed error=%s", exc)
