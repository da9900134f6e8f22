"""
Option Store — key-value persistence for Platform Resilience

Narrow get/set/delete interface that every other module persists through.
Keys are plain strings scoped per platform by the caller
(``twitter_endpoint_health``, ``twitter_tokens`` ...).

Backends:
    - MemoryOptionStore: process-local dict, used for tests and embedding.
    - JsonFileOptionStore: one JSON file per key under a data directory,
      written atomically (tmp file + replace).

All file state persisted to: data/resilience/  (override with
PLATFORM_RESILIENCE_DATA_DIR)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("option_store")

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data" / "resilience"

# Keys are turned into file names; anything outside this set is replaced.
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def get_data_dir() -> Path:
    """Return the configured data directory (env override wins)."""
    override = os.getenv("PLATFORM_RESILIENCE_DATA_DIR")
    if override:
        return Path(override)
    return DEFAULT_DATA_DIR


def option_key(platform: str, name: str) -> str:
    """Build the store key for *name* scoped to *platform*.

    ``option_key("twitter", "tokens") -> "twitter_tokens"``, prefixed with
    PLATFORM_RESILIENCE_KEY_PREFIX when set (e.g. ``smo_social_``).
    """
    prefix = os.getenv("PLATFORM_RESILIENCE_KEY_PREFIX", "")
    return f"{prefix}{platform}_{name}"


# ---------------------------------------------------------------------------
# JSON persistence helpers (atomic writes)
# ---------------------------------------------------------------------------

def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when the file is missing or corrupt."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as exc:
        logger.warning("Corrupt option file %s, treating as absent: %s", path, exc)
        return default


def _save_json(path: Path, data: Any) -> None:
    """Atomically write *data* as pretty-printed JSON to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        os.replace(str(tmp), str(path))
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


# ===================================================================
# STORE INTERFACE
# ===================================================================

class OptionStore:
    """Abstract key-value store.

    Subclasses implement ``get``, ``set`` and ``delete``.  ``update`` runs a
    read-modify-write under the store lock so that concurrent callers in one
    process cannot lose each other's writes.
    """

    def __init__(self) -> None:
        self.lock = RLock()

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def update(self, key: str, mutator: Callable[[Any], Any], default: Any = None) -> Any:
        """Apply *mutator* to the current value of *key* and store the result.

        The mutator receives a copy of the stored value (or *default*) and
        returns the new value.  Returns the stored value.
        """
        with self.lock:
            current = self.get(key, default)
            new_value = mutator(copy.deepcopy(current))
            self.set(key, new_value)
            return new_value


class MemoryOptionStore(OptionStore):
    """In-process option store backed by a dict."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self.lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self.lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self.lock:
            if key not in self._data:
                return False
            del self._data[key]
            return True

    def keys(self) -> List[str]:
        with self.lock:
            return sorted(self._data)

    def __contains__(self, key: str) -> bool:
        with self.lock:
            return key in self._data

    def __repr__(self) -> str:
        return f"MemoryOptionStore({len(self._data)} keys)"


class JsonFileOptionStore(OptionStore):
    """Option store persisting each key as ``<data_dir>/<key>.json``.

    Parameters
    ----------
    data_dir:
        Directory holding the option files.  Defaults to
        :func:`get_data_dir`.
    """

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        super().__init__()
        self.data_dir = Path(data_dir) if data_dir is not None else get_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS.sub("_", key)
        return self.data_dir / f"{safe}.json"

    def get(self, key: str, default: Any = None) -> Any:
        with self.lock:
            return _load_json(self._path(key), default)

    def set(self, key: str, value: Any) -> None:
        with self.lock:
            _save_json(self._path(key), value)
        logger.debug("Saved option '%s' to %s", key, self.data_dir)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self.lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.debug("Deleted option '%s'", key)
        return True

    def keys(self) -> List[str]:
        with self.lock:
            return sorted(p.stem for p in self.data_dir.glob("*.json"))

    def __repr__(self) -> str:
        return f"JsonFileOptionStore({str(self.data_dir)!r})"


# ===================================================================
# SINGLETON
# ===================================================================

_default_store: Optional[OptionStore] = None


def get_option_store() -> OptionStore:
    """Return the process-wide JSON option store, creating it on first call."""
    global _default_store
    if _default_store is None:
        _default_store = JsonFileOptionStore()
    return _default_store
