"""
Memoization boundary for expensive pipeline stages.

Stage functions stay pure; callers that want reuse wrap a call in
``ResultCache.get_or_compute`` with a key derived from the stage inputs. The
store lives in memory only and is never consulted by algorithm code itself.
"""

import hashlib
import threading
from typing import Any, Callable, Dict, TypeVar

import numpy as np
import pandas as pd

from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _update_digest(digest: "hashlib._Hash", part: Any) -> None:
    if isinstance(part, np.ndarray):
        digest.update(str(part.dtype).encode())
        digest.update(str(part.shape).encode())
        digest.update(np.ascontiguousarray(part).tobytes())
    elif isinstance(part, (pd.DataFrame, pd.Series)):
        digest.update(pd.util.hash_pandas_object(part, index=True).to_numpy().tobytes())
        if isinstance(part, pd.DataFrame):
            digest.update(repr(list(part.columns)).encode())
    elif isinstance(part, (list, tuple)):
        digest.update(f"<seq{len(part)}>".encode())
        for item in part:
            _update_digest(digest, item)
    else:
        digest.update(repr(part).encode())


class ResultCache:
    """In-memory key → result store with hit/miss accounting."""

    def __init__(self):
        self._store: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key_for(*parts: Any) -> str:
        """
        Build a cache key from stage inputs.

        Arrays are hashed by dtype, shape and contents; pandas objects via
        ``pd.util.hash_pandas_object``; anything else by ``repr``.
        """
        digest = hashlib.sha256()
        for part in parts:
            _update_digest(digest, part)
        return digest.hexdigest()

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._store[key] = value

    def get_or_compute(self, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value for ``key`` or compute and store it."""
        with self._lock:
            if key in self._store:
                self.hits += 1
                logger.debug(f"Cache hit: {key[:12]}")
                return self._store[key]
            self.misses += 1

        value = compute()
        self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store
