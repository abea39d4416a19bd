"""Remote kill switch for costly operations.

A flag resolves through a fixed chain of sources, each consulted only when
the previous one has nothing to say:

1. Environment variable named after the flag (hard local override)
2. Remote config service (bounded HTTP call)
3. Persisted fallback row in the FeatureFlags table
4. Compiled-in default

Failures in steps 2 and 3 count as "no value" and never reach the caller.
Resolved values are cached process-wide for ``cache_ttl_seconds``; a flag
flipped remotely takes effect within one TTL. Cache reads never touch the
network.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genguard.config import FlagSettings, StoreSettings
from genguard.db.connection import DatabaseConnection
from genguard.db.models import FeatureFlag, utcnow
from genguard.db.transaction import dialect_insert, run_transaction
from genguard.errors import ConfigFetchError
from genguard.logging.config import get_logger

from .remote import RemoteConfigClient

logger = get_logger(__name__)

FlagSource = Literal["env", "remote", "store", "default"]

DEFAULT_ENABLED = True

TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})


def parse_flag(value: Any) -> bool | None:
    """Interpret a raw flag value; None means "no usable value"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
    return None


@dataclass(frozen=True)
class FlagResolution:
    enabled: bool
    source: FlagSource


@dataclass(frozen=True)
class CachedFlag:
    key: str
    enabled: bool
    source: FlagSource
    fetched_at: float
    ttl: float

    def fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class FlagCache:
    """Process-wide resolved flags with an explicit TTL per entry.

    Entries are replaced wholesale, never mutated, so concurrent readers need
    no lock; a reader may see a value up to one TTL old.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, CachedFlag] = {}
        self.clock = clock

    def get(self, key: str) -> CachedFlag | None:
        entry = self._entries.get(key)
        if entry is None or not entry.fresh(self.clock()):
            return None
        return entry

    def put(self, key: str, resolution: FlagResolution, ttl: float) -> None:
        self._entries[key] = CachedFlag(
            key=key,
            enabled=resolution.enabled,
            source=resolution.source,
            fetched_at=self.clock(),
            ttl=ttl,
        )

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


# Shared by every FeatureSwitch in the process unless one is given explicitly
_flag_cache = FlagCache()


def get_flag_cache() -> FlagCache:
    return _flag_cache


def invalidate(key: str | None = None) -> None:
    """Drop one cached flag, or all of them."""
    _flag_cache.invalidate(key)


class FeatureSwitch:
    """Resolves boolean operational flags through env, remote, store and default."""

    def __init__(
        self,
        db: DatabaseConnection,
        settings: FlagSettings,
        store_settings: StoreSettings,
        cache: FlagCache | None = None,
        environ: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.store_settings = store_settings
        self.cache = cache if cache is not None else get_flag_cache()
        self.environ = environ if environ is not None else os.environ
        self.remote = RemoteConfigClient(
            base_url=settings.remote_url,
            token=settings.remote_token,
            timeout=settings.remote_timeout_seconds,
            transport=transport,
        )

    async def resolve(self, key: str) -> FlagResolution:
        """Resolve ``key``; always returns, never raises for source failures."""
        cached = self.cache.get(key)
        if cached is not None:
            return FlagResolution(enabled=cached.enabled, source=cached.source)

        resolution = await self._resolve_uncached(key)
        self.cache.put(key, resolution, self.settings.cache_ttl_seconds)
        logger.debug("Resolved flag", key=key, enabled=resolution.enabled, source=resolution.source)
        return resolution

    async def is_enabled(self, key: str) -> bool:
        return (await self.resolve(key)).enabled

    def invalidate(self, key: str | None = None) -> None:
        self.cache.invalidate(key)

    async def _resolve_uncached(self, key: str) -> FlagResolution:
        env_value = self._from_env(key)
        if env_value is not None:
            return FlagResolution(enabled=env_value, source="env")

        for source, fetch in (("remote", self._from_remote), ("store", self._from_store)):
            try:
                value = await fetch(key)
            except ConfigFetchError as e:
                logger.warning("Flag source unavailable", key=key, source=e.source, error=e.message)
                continue
            if value is not None:
                return FlagResolution(enabled=value, source=source)

        return FlagResolution(
            enabled=self.settings.defaults.get(key, DEFAULT_ENABLED),
            source="default",
        )

    def _from_env(self, key: str) -> bool | None:
        raw = self.environ.get(key)
        if raw is None:
            return None
        return parse_flag(raw)

    async def _from_remote(self, key: str) -> bool | None:
        if not self.remote.configured:
            return None
        timeout = self.settings.remote_timeout_seconds
        try:
            raw = await asyncio.wait_for(self.remote.fetch(key), timeout=timeout)
        except TimeoutError as e:
            raise ConfigFetchError("remote", f"no answer within {timeout}s") from e
        return parse_flag(raw)

    async def _from_store(self, key: str) -> bool | None:
        async def read() -> str | None:
            async with self.db.session() as session:
                result = await session.execute(
                    select(FeatureFlag.value).where(FeatureFlag.flag_key == key)
                )
                return result.scalar_one_or_none()

        timeout = self.settings.store_timeout_seconds
        try:
            raw = await asyncio.wait_for(read(), timeout=timeout)
        except TimeoutError as e:
            raise ConfigFetchError("store", f"no answer within {timeout}s") from e
        except Exception as e:
            raise ConfigFetchError("store", str(e) or type(e).__name__) from e
        return parse_flag(raw) if raw is not None else None

    async def set_stored_flag(self, key: str, enabled: bool) -> None:
        """Write the persisted fallback value and drop the cached resolution."""
        now = utcnow()

        async def work(session: AsyncSession) -> None:
            stmt = dialect_insert(session, FeatureFlag).values(
                flag_key=key,
                value="true" if enabled else "false",
                created_at=now,
                updated_at=now,
            )
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["flag_key"],
                    set_={"value": stmt.excluded.value, "updated_at": now},
                )
            )

        await run_transaction(self.db, work, self.store_settings, name="flags.set")
        self.cache.invalidate(key)
        logger.info("Stored flag updated", key=key, enabled=enabled)
