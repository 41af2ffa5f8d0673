# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Content-addressed cache of build stage outputs.

Keys are stage fingerprints, values are the layer snapshot a stage produced.
Readers never block each other; at most one writer runs per key, so
concurrent misses on the same fingerprint do the work once.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DependencyCache(ABC):
    """
    Key/value store for stage outputs. Subclasses provide storage; the
    single-writer-per-key protocol lives here.
    """

    def __init__(self):
        # key -> [writer lock, callers holding or waiting for it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored output for ``key``, or None on a miss."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any previous value."""

    @abstractmethod
    def keys(self) -> list:
        """All stored keys."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    @contextmanager
    def _writer(self, key: str):
        """Holds the key's writer lock. The lock is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def get_or_create(self, key: str, factory: Callable[[], bytes]) -> bytes:
        """
        Return the value for ``key``, running ``factory`` to produce it on a miss.

        Concurrent callers missing on the same key wait for the first one's
        result instead of running ``factory`` themselves.

        Args:
            key: Stage fingerprint.
            factory: Produces the value; exceptions propagate and nothing is stored.

        Returns:
            The cached or freshly produced value.
        """
        data = self.get(key)
        if data is not None:
            return data

        with self._writer(key):
            data = self.get(key)
            if data is not None:
                return data
            logger.debug("cache miss for %s, producing", key[:19])
            data = factory()
            self.put(key, data)
            return data

    def store(self, key: str, factory: Callable[[], bytes]) -> bytes:
        """
        Run ``factory`` and store its result unconditionally, under the key's writer lock.
        Used when an upstream miss forces recomputation of an already cached key.
        """
        with self._writer(key):
            data = factory()
            self.put(key, data)
            return data


class InMemoryDependencyCache(DependencyCache):
    """
    Process-local cache. Starts empty; used by tests and one-off builds.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, bytes] = {}
        self._data_guard = threading.Lock()
        self.writes = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._data_guard:
            return self._data.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._data_guard:
            self._data[key] = data
            self.writes += 1

    def keys(self) -> list:
        with self._data_guard:
            return list(self._data)


class DiskDependencyCache(DependencyCache):
    """
    On-disk cache: one file per key under ``layers/`` plus a JSON index of
    when each entry was added.

    The layer files are the source of truth. A file's modification time is
    its last use, so every process sharing the directory sees the same
    ages, and pruning walks the files rather than the index.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Initialize the cache.

        Args:
            cache_dir: Directory for cache storage. Defaults to ~/.stackship/cache
        """
        super().__init__()
        if cache_dir:
            self.cache_dir = Path(cache_dir)
        else:
            self.cache_dir = Path.home() / ".stackship" / "cache"

        self.layers_dir = self.cache_dir / "layers"
        self.index_file = self.cache_dir / "index.json"
        self.layers_dir.mkdir(parents=True, exist_ok=True)

        self._index_guard = threading.Lock()

    def _load_index(self) -> Dict[str, Any]:
        """Load the cache index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError):
                logger.warning("Cache index %s is unreadable, starting a new one", self.index_file)
        return {"layers": {}}

    def _update_index(self, added: Optional[Dict[str, Any]] = None, removed: Iterable[str] = ()) -> None:
        """
        Applies changes to the index as it is on disk now, so entries other
        processes wrote since this one started are kept.
        """
        with self._index_guard:
            index = self._load_index()
            index["layers"].update(added or {})
            for key in removed:
                index["layers"].pop(key, None)
            tmp = self.index_file.with_name(f"index.{os.getpid()}.{threading.get_ident()}.tmp")
            with open(tmp, 'w') as f:
                json.dump(index, f, indent=2)
            os.replace(tmp, self.index_file)

    def _path(self, key: str) -> Path:
        return self.layers_dir / key.replace(":", "_", 1)

    @staticmethod
    def _key(filename: str) -> str:
        return filename.replace("_", ":", 1)

    def _layer_files(self) -> List[Path]:
        return [p for p in self.layers_dir.iterdir() if p.is_file() and not p.name.endswith(".partial")]

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                data = f.read()
            os.utime(path)
        except FileNotFoundError:
            return None
        return data

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        # Readers only ever see complete files
        tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.partial")
        with open(tmp, 'wb') as f:
            f.write(data)
        os.replace(tmp, path)
        self._update_index(added={key: {"size": len(data), "added_at": _now()}})

    def keys(self) -> list:
        return sorted(self._key(p.name) for p in self._layer_files())

    def last_used(self, key: str) -> Optional[datetime]:
        """When ``key`` was last written or read, or None if it is not stored."""
        try:
            return datetime.fromtimestamp(self._path(key).stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return None

    def prune(self, max_age_days: Optional[int] = None) -> Dict[str, int]:
        """
        Remove entries not used within ``max_age_days`` (all entries when None).

        Returns:
            Statistics about removed items.
        """
        removed = []
        freed = 0
        cutoff = None
        if max_age_days is not None:
            cutoff = (datetime.now(timezone.utc) - timedelta(days=max_age_days)).timestamp()

        for path in self._layer_files():
            try:
                stat = path.stat()
                if cutoff is not None and stat.st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            freed += stat.st_size
            removed.append(self._key(path.name))

        stale = [k for k in self._load_index()["layers"] if not self._path(k).exists()]
        self._update_index(removed=set(removed) | set(stale))
        return {"removed_layers": len(removed), "freed_bytes": freed}

    def size(self) -> int:
        """Total size of stored layers in bytes."""
        return sum(p.stat().st_size for p in self._layer_files())
