"""Process-local cache for identifiers already known to be over their limit.

The cache is an accelerator, never the source of truth: it is mutated by
every concurrent call without locks and last write wins.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import MutableMapping, Optional

from edgelimit.app.core import clock


class EphemeralCache:
    """Map of key -> reset timestamp (ms), or key -> hit count.

    Block entries whose reset lies in the past are logically absent and are
    removed lazily on read; nothing sweeps the map proactively.
    """

    def __init__(self, store: Optional[MutableMapping[str, int]] = None) -> None:
        self._store: MutableMapping[str, int] = store if store is not None else {}

    def is_blocked(self, identifier: str) -> tuple[bool, int]:
        """Return ``(blocked, reset)`` for an identifier."""
        reset = self._store.get(identifier)
        if reset is None:
            return False, 0
        if reset < clock.now_ms():
            self._store.pop(identifier, None)
            return False, 0
        return True, reset

    def block_until(self, identifier: str, reset: int) -> None:
        self._store[identifier] = reset

    def set(self, key: str, value: int) -> None:
        self._store[key] = value

    def get(self, key: str) -> Optional[int]:
        return self._store.get(key)

    def incr(self, key: str, amount: int = 1) -> int:
        value = self._store.get(key, 0) + amount
        self._store[key] = value
        return value

    def pop(self, key: str) -> None:
        self._store.pop(key, None)

    def empty(self) -> None:
        self._store.clear()

    def size(self) -> int:
        return len(self._store)

    def __len__(self) -> int:
        return len(self._store)


class CacheMode(str, Enum):
    DISABLED = "disabled"
    PROVIDED = "provided"
    DEFAULT = "default"


@dataclass(frozen=True)
class CacheConfig:
    """How the orchestrator obtains its ephemeral cache.

    Use one of the constructors:

        CacheConfig.disabled()          # no cache
        CacheConfig.provided(my_dict)   # share an existing mapping
        CacheConfig.default()           # fresh private mapping
    """

    mode: CacheMode = CacheMode.DEFAULT
    store: Optional[MutableMapping[str, int]] = field(default=None, compare=False)

    @classmethod
    def disabled(cls) -> "CacheConfig":
        return cls(mode=CacheMode.DISABLED)

    @classmethod
    def provided(cls, store: MutableMapping[str, int]) -> "CacheConfig":
        return cls(mode=CacheMode.PROVIDED, store=store)

    @classmethod
    def default(cls) -> "CacheConfig":
        return cls(mode=CacheMode.DEFAULT)

    def build(self) -> Optional[EphemeralCache]:
        """Create the cache this configuration describes (None when disabled)."""
        if self.mode is CacheMode.DISABLED:
            return None
        if self.mode is CacheMode.PROVIDED:
            if self.store is None:
                raise ValueError("CacheConfig.provided requires a mapping")
            return EphemeralCache(self.store)
        return EphemeralCache()
