"""
Device-local progress checkpoints

Progress is keyed by (collection, user) and never leaves this device. Writes are
synchronous and complete before the engine reports the new state.
"""
import json
import logging
import os
import pathlib
import tempfile
from typing import Dict, Optional

from pydantic import ValidationError

from schemas import CollectionProgress

logger = logging.getLogger(__name__)


def progress_key(collection_id: str, user_id: str) -> str:
    return f"progress:{collection_id}:{user_id}"


def _decode(key: str, raw: Optional[str]) -> Optional[CollectionProgress]:
    if raw is None:
        return None
    try:
        return CollectionProgress.model_validate_json(raw)
    except ValidationError:
        logger.warning("discarding unreadable progress entry %s", key)
        return None


class MemoryProgressStore:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, collection_id: str, user_id: str) -> Optional[CollectionProgress]:
        key = progress_key(collection_id, user_id)
        return _decode(key, self._data.get(key))

    def put(self, progress: CollectionProgress) -> None:
        self._data[progress_key(progress.collection_id, progress.user_id)] = progress.model_dump_json()


class JsonFileProgressStore:
    """All checkpoints in one JSON object on disk; each put rewrites the file atomically."""

    def __init__(self, path):
        # Anchor to an absolute path so working directory changes don't matter
        self.path = pathlib.Path(path).resolve()

    def _load(self) -> Dict[str, str]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("progress file %s unreadable: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, collection_id: str, user_id: str) -> Optional[CollectionProgress]:
        key = progress_key(collection_id, user_id)
        return _decode(key, self._load().get(key))

    def put(self, progress: CollectionProgress) -> None:
        data = self._load()
        data[progress_key(progress.collection_id, progress.user_id)] = progress.model_dump_json()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".progress-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
