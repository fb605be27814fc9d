from __future__ import annotations

import argparse
import asyncio
from typing import Any, Awaitable, Callable, cast

import yaml

from gemini_relay.errors import BackingUnavailable
from gemini_relay.gateway.credential_store import CredentialStore, CredentialStoreConfig
from gemini_relay.gateway.fallback import FallbackCredentialSource
from gemini_relay.settings import Settings, get_settings
from gemini_relay.trace import bind_trace_id


async def _with_store(
    settings: Settings, action: Callable[[CredentialStore], Awaitable[int]]
) -> int:
    bind_trace_id()
    store = CredentialStore(CredentialStoreConfig.from_settings(settings))
    try:
        if not await store.connect():
            print(f"error: redis is not reachable at {settings.redis_address}")
            return 1
        return await action(store)
    finally:
        await store.close()


def cmd_count(_: argparse.Namespace) -> int:
    async def _count(store: CredentialStore) -> int:
        count = await store.count()
        if count is None:
            print("error: could not read the credential pool")
            return 1
        print(count)
        return 0

    return asyncio.run(_with_store(get_settings(), _count))


def cmd_list(_: argparse.Namespace) -> int:
    async def _list(store: CredentialStore) -> int:
        records = await store.records()
        payload: dict[str, Any] = {
            "pool_key": store.pool_key,
            "count": len(records),
            "credentials": [
                {"position": position, "key": record.masked, "proxy": record.route}
                for position, record in enumerate(records)
            ],
        }
        print(yaml.safe_dump(payload, sort_keys=False).rstrip())
        return 0

    return asyncio.run(_with_store(get_settings(), _list))


def cmd_seed(_: argparse.Namespace) -> int:
    settings = get_settings()

    async def _seed(store: CredentialStore) -> int:
        written = await store.initialize(FallbackCredentialSource(settings.api_key).load())
        print(f"written={written}")
        return 0

    return asyncio.run(_with_store(settings, _seed))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gemini-relay-pool",
        description="Inspect and seed the durable credential pool in Redis.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    count_cmd = subparsers.add_parser("count", help="Print the number of stored credentials.")
    count_cmd.set_defaults(handler=cmd_count)

    list_cmd = subparsers.add_parser(
        "list", help="Print the stored credentials (masked) in rotation order."
    )
    list_cmd.set_defaults(handler=cmd_list)

    seed_cmd = subparsers.add_parser(
        "seed",
        help="Populate an empty pool from API_KEY; a populated pool is left untouched.",
    )
    seed_cmd.set_defaults(handler=cmd_seed)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except BackingUnavailable as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
