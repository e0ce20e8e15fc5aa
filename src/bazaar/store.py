"""Whole-document JSON collections on disk (thread-safe, atomic)."""
from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from .errors import StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collection name -> empty default document.
COLLECTIONS: Dict[str, Any] = {
    "users": [],
    "articles": [],
    "chats": {"chats": []},
    "profiles": {},
}


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _has_shape(doc: Any, default: Any) -> bool:
    if not isinstance(doc, type(default)):
        return False
    if isinstance(default, dict):
        # every key of the default must be present with the same container type
        return all(isinstance(doc.get(k), type(v)) for k, v in default.items())
    return True


# -----------------------------
# RecordStore
# -----------------------------
class RecordStore:
    """Named JSON collections, one file each, rewritten in full on every save.

    Layout:
        data_dir/
          users.json      # list[{"id", "secretHash"}]
          articles.json   # list[article]
          chats.json      # {"chats": list[room]}
          profiles.json   # {user_id: upload reference}

    Plain reads never raise: a missing, unreadable or malformed file yields
    the collection's empty default. Writes raise :class:`StorageFailure`.
    Every read-modify-write must go through :meth:`transaction`, which holds
    the collection's lock for the whole cycle and refuses to start when an
    existing file cannot be read.
    """

    def __init__(self, data_dir: str, collections: Optional[Dict[str, Any]] = None) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.collections = dict(collections if collections is not None else COLLECTIONS)
        self._locks: Dict[str, threading.RLock] = {name: threading.RLock() for name in self.collections}

    # --------- paths ----------
    def path(self, collection: str) -> Path:
        self._check(collection)
        return self.root / f"{collection}.json"

    def exists(self, collection: str) -> bool:
        return self.path(collection).exists()

    def lock(self, collection: str) -> threading.RLock:
        self._check(collection)
        return self._locks[collection]

    # --------- core API ----------
    def load(self, collection: str, *, strict: bool = False) -> Any:
        """Load a collection, falling back to its empty default.

        With ``strict`` an existing file that cannot be read (or cannot be moved
        aside when malformed) raises :class:`StorageFailure` instead, so a
        read-modify-write never saves the default over stored records.
        """
        path = self.path(collection)
        default = copy.deepcopy(self.collections[collection])
        if not path.exists():
            logger.debug("Collection %s has no file at %s; using empty default", collection, path)
            return default
        try:
            doc = _read_json(path)
        except ValueError as e:
            self._quarantine(collection, path, f"malformed JSON: {e}", strict=strict)
            return default
        except OSError as e:
            if strict:
                logger.error("Collection %s unreadable at %s: %s", collection, path, e)
                raise StorageFailure(f"Cannot read collection {collection}: {e}") from e
            logger.error("Collection %s unreadable at %s: %s; using empty default", collection, path, e)
            return default
        if not _has_shape(doc, default):
            self._quarantine(collection, path, f"unexpected document type {type(doc).__name__}", strict=strict)
            return default
        return doc

    def save(self, collection: str, doc: Any) -> None:
        """Serialize and atomically overwrite the collection file."""
        path = self.path(collection)
        try:
            text = json.dumps(doc, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            raise StorageFailure(f"Cannot serialize collection {collection}: {e}") from e
        try:
            _atomic_write_text(path, text)
        except OSError as e:
            logger.exception("Failed to write collection %s to %s", collection, path)
            raise StorageFailure(f"Cannot write collection {collection}: {e}") from e

    @contextmanager
    def transaction(self, collection: str) -> Iterator[Any]:
        """Serialized read-modify-write cycle.

        Yields the loaded document for in-place mutation and saves it when the
        block exits normally. Nothing is written if the block raises.
        """
        with self.lock(collection):
            doc = self.load(collection, strict=True)
            yield doc
            self.save(collection, doc)

    def update(self, collection: str, fn: Callable[[Any], T]) -> T:
        """Run ``fn(doc)`` inside a transaction and return its result."""
        with self.transaction(collection) as doc:
            return fn(doc)

    # --------- internals ----------
    def _check(self, collection: str) -> None:
        if collection not in self.collections:
            raise KeyError(f"Unknown collection: {collection}")

    def _quarantine(self, collection: str, path: Path, reason: str, *, strict: bool = False) -> None:
        # Corruption fallback: keep a backup so the next save does not destroy it.
        bad = path.with_suffix(".corrupt.json")
        logger.warning("Collection %s at %s is corrupt (%s); moved to %s", collection, path, reason, bad)
        with self._locks[collection]:
            try:
                os.replace(path, bad)
            except OSError as e:
                logger.error("Could not move corrupt file %s aside: %s", path, e)
                if strict:
                    raise StorageFailure(f"Cannot move corrupt collection {collection} aside: {e}") from e
