"""
Token-account resolution with a time-boxed cache.

An owner account on the token ledger may hold its balance in one or more
separate token accounts. Resolution asks the service which ones, and
caches the answer for a short while.

Cache rules:
    - Entries are keyed by the owner's canonical string encoding.
    - An entry older than the TTL (default 5 minutes) is treated as absent:
      it is evicted and re-fetched, never served.
    - Only non-empty answers are cached.
    - Capacity is bounded; the least recently used entry is evicted first.

Network rules:
    An empty answer right after an account is created is expected for a
    short window, so an empty result is retried (up to ``max_retries``
    attempts, no backoff). Any other failure propagates immediately. An
    empty answer after the last attempt is returned as an empty list, not
    an error.

Concurrent resolutions of the same owner may both miss and both fetch;
the second write simply overwrites the first.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from nexus_pay.keys import PublicKey
from nexus_pay.logging_setup import get_logger
from nexus_pay.rpc.client import LedgerRpc

_logger = get_logger("resolver")

DEFAULT_CACHE_SIZE = 500
DEFAULT_CACHE_TTL = 5 * 60.0


@dataclass(frozen=True)
class CacheEntry:
    accounts: tuple[PublicKey, ...]
    created: float


def is_fresh(now: float, entry: CacheEntry, ttl: float) -> bool:
    """True while ``entry`` is younger than ``ttl`` seconds at ``now``."""
    return now - entry.created < ttl


class TokenAccountCache:
    """Thread-safe LRU of owner → token accounts.

    Args:
        capacity: Maximum number of owners kept.
        ttl: Entry lifetime in seconds.
        clock: Monotonic clock in seconds. Inject for tests.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CACHE_SIZE,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self._capacity = capacity
        self._ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> tuple[PublicKey, ...] | None:
        """Fresh accounts for ``key``, or None (stale entries are evicted)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not is_fresh(self._clock(), entry, self._ttl):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.accounts

    def put(self, key: str, accounts: tuple[PublicKey, ...]) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(accounts=accounts, created=self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)


class AccountResolver:
    """Resolves owner accounts to their token accounts.

    Args:
        rpc: Ledger RPC implementation.
        cache: Shared token-account cache.
        max_retries: Attempt bound for empty answers.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        cache: TokenAccountCache | None = None,
        *,
        max_retries: int = 10,
    ) -> None:
        self._rpc = rpc
        self._cache = cache if cache is not None else TokenAccountCache()
        self._attempts = max(1, max_retries)

    @property
    def cache(self) -> TokenAccountCache:
        return self._cache

    async def resolve(self, account: PublicKey) -> list[PublicKey]:
        """Token accounts owned by ``account``, in service order.

        Returns:
            The resolved accounts; empty when none were found.

        Raises:
            RpcError: On non-retriable transport failures.
        """
        key = account.to_string()
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        accounts: list[PublicKey] = []
        for attempt in range(1, self._attempts + 1):
            accounts = await self._rpc.resolve_token_accounts(account)
            if accounts:
                break
            _logger.debug("resolver:empty account=%s attempt=%d", key, attempt)

        if not accounts:
            return []

        self._cache.put(key, tuple(accounts))
        return list(accounts)
