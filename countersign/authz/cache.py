"""
Process-local decision cache.

Bounded LRU with per-entry expiry. Entries remember the policy-set version
they were computed under and are dropped once the store version moves on.
"""

import copy
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .models import AuthorizationDecision


@dataclass
class _CacheEntry:
    decision: AuthorizationDecision
    policy_version: int
    expires_at: datetime


class DecisionCache:
    """LRU decision cache (default 10k entries, 60 s TTL)."""

    def __init__(self, max_entries: int = 10000, ttl_seconds: float = 60.0):
        self.max_entries = max_entries
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
            "invalidations": 0,
        }

    def get(self, key: str, policy_version: int, now: datetime) -> Optional[AuthorizationDecision]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.policy_version != policy_version:
                del self._entries[key]
                self._stats["invalidations"] += 1
                self._stats["misses"] += 1
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return copy.deepcopy(entry.decision)

    def put(
        self,
        key: str,
        decision: AuthorizationDecision,
        policy_version: int,
        now: datetime,
        expires_at: Optional[datetime] = None,
    ) -> None:
        deadline = now + self.ttl
        if expires_at is not None and expires_at < deadline:
            deadline = expires_at
        with self._lock:
            self._entries[key] = _CacheEntry(copy.deepcopy(decision), policy_version, deadline)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats["invalidations"] += count
            return count

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return dict(
                self._stats,
                size=len(self._entries),
                max_entries=self.max_entries,
                ttl_seconds=self.ttl.total_seconds(),
                hit_rate=self._stats["hits"] / lookups if lookups else 0.0,
            )
