# Mapping between metadata rows and the integer keys stored in the vector index.
#
#   direct    : index_key == metadata row id (default)
#   composite : index_key == counter * 100 + secondary_tag, with a
#               counter -> {content, row_id} side-map in contentsMap.json
#
# The scheme is picked once from settings.ID_SCHEME; nothing infers it from
# the shape of a key.

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..errors import DataIntegrityError, DomainError, IndexCorrupt
from ..storage.object_store import atomic_write

logger = logging.getLogger(__name__)

TAG_BASE = 100
CONTENTS_MAP_NAME = "contentsMap.json"


def encode(counter: int, tag: int) -> int:
    if not 0 <= tag < TAG_BASE:
        raise DomainError(f"secondary tag {tag} outside [0, {TAG_BASE})")
    if counter < 0:
        raise DomainError(f"counter {counter} must be non-negative")
    return counter * TAG_BASE + tag


def decode(key: int) -> Tuple[int, int]:
    if key < 0:
        raise DomainError(f"index key {key} must be non-negative")
    return key // TAG_BASE, key % TAG_BASE


class DirectKeyCodec:
    scheme = "direct"

    def validate(self, tag: int) -> None:
        return None

    def assign(self, group_id: str, row_id: int, content: str, tag: int) -> int:
        return int(row_id)

    def resolve(self, group_id: str, key: int) -> Optional[int]:
        return int(key)

    def key_for_row(self, group_id: str, row_id: int) -> Optional[int]:
        return int(row_id)

    def forget(self, group_id: str, key: int) -> None:
        return None

    def save(self) -> bool:
        return False

    def reload(self) -> None:
        return None


class CompositeKeyCodec:
    """Legacy scheme kept for indexes built before keys matched row ids."""

    scheme = "composite"

    def __init__(self, index_dir: Path | str):
        self.path = Path(index_dir) / CONTENTS_MAP_NAME
        self._lock = threading.Lock()
        self._dirty = False
        self._map: Dict[str, Dict[str, Dict]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Dict]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            raise IndexCorrupt(f"Unreadable side-map {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise IndexCorrupt(f"Side-map {self.path} is not a JSON object")
        return data

    def validate(self, tag: int) -> None:
        if not 0 <= int(tag) < TAG_BASE:
            raise DomainError(f"secondary tag {tag} outside [0, {TAG_BASE})")

    def _next_counter(self, group: Dict[str, Dict]) -> int:
        return max((int(c) for c in group), default=-1) + 1

    def assign(self, group_id: str, row_id: int, content: str, tag: int) -> int:
        with self._lock:
            group = self._map.setdefault(group_id, {})
            counter = self._next_counter(group)
            key = encode(counter, tag)
            group[str(counter)] = {"content": content, "rowId": int(row_id), "tag": int(tag)}
            self._dirty = True
            return key

    def resolve(self, group_id: str, key: int) -> Optional[int]:
        counter, tag = decode(int(key))
        entry = self._map.get(group_id, {}).get(str(counter))
        if entry is None or int(entry["rowId"]) < 0:
            return None
        if int(entry.get("tag", tag)) != tag:
            raise DataIntegrityError(f"Key {key} tag {tag} does not match side-map entry {entry}")
        return int(entry["rowId"])

    def key_for_row(self, group_id: str, row_id: int) -> Optional[int]:
        for counter, entry in self._map.get(group_id, {}).items():
            if int(entry["rowId"]) == int(row_id):
                return encode(int(counter), int(entry["tag"]))
        return None

    def content(self, group_id: str, key: int) -> Optional[str]:
        counter, _ = decode(int(key))
        entry = self._map.get(group_id, {}).get(str(counter))
        return entry["content"] if entry else None

    def forget(self, group_id: str, key: int) -> None:
        counter, _ = decode(int(key))
        with self._lock:
            # Counters are never reused; keep a tombstoned marker so max() stays monotonic.
            entry = self._map.get(group_id, {}).get(str(counter))
            if entry is not None:
                entry["rowId"] = -1
                self._dirty = True

    def save(self) -> bool:
        with self._lock:
            if not self._dirty:
                return False
            atomic_write(self.path, json.dumps(self._map, ensure_ascii=False, sort_keys=True).encode("utf-8"))
            self._dirty = False
            logger.info("Saved side-map: %s", self.path)
            return True

    def reload(self) -> None:
        """Drop unsaved assignments and re-read the side-map from disk."""
        with self._lock:
            self._map = self._load()
            self._dirty = False


def build_codec(scheme: str, index_dir: Path | str):
    if scheme == "direct":
        return DirectKeyCodec()
    if scheme == "composite":
        return CompositeKeyCodec(index_dir)
    raise ValueError(f"Unknown ID scheme: {scheme}")
