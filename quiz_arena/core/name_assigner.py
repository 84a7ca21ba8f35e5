"""Aliases for guests who join a competition without typing a name."""

from __future__ import annotations

from collections import deque
from pathlib import Path
import random
from threading import Lock
from typing import Collection

_DATA_PATH = Path(__file__).resolve().parent.parent / "data" / "guest_names.txt"
_FALLBACK_NAMES = ["Curious Otter", "Brave Falcon", "Quiet Panda", "Swift Lynx", "Clever Raven", "Lucky Fox"]


class NameAssigner:
    """Hands out shuffled aliases, never repeating one inside a competition."""

    def __init__(self, names: list[str], seed: int | None = None):
        unique = dict.fromkeys(name.strip() for name in names if name.strip())
        if not unique:
            raise ValueError("Alias list cannot be empty.")
        self._names = list(unique)
        self._pool: deque[str] = deque()
        self._lock = Lock()
        self._rng = random.Random(seed)

    @classmethod
    def from_default_file(cls) -> "NameAssigner":
        try:
            return cls(_DATA_PATH.read_text(encoding="utf-8").splitlines())
        except (OSError, ValueError):
            return cls(_FALLBACK_NAMES)

    def alias_for(self, taken: Collection[str] = ()) -> str:
        """Next alias not in ``taken``, numbered once every base name is in use."""
        with self._lock:
            for _ in range(len(self._names)):
                if not self._pool:
                    self._shuffle_into_pool()
                candidate = self._pool.popleft()
                if candidate not in taken:
                    return candidate
            if not self._pool:
                self._shuffle_into_pool()
            base = self._pool.popleft()
        suffix = 2
        while f"{base} {suffix}" in taken:
            suffix += 1
        return f"{base} {suffix}"

    def _shuffle_into_pool(self) -> None:
        shuffled = list(self._names)
        self._rng.shuffle(shuffled)
        self._pool.extend(shuffled)
