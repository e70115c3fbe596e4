"""
Record Store with Fallback

Primary: MongoDB via environment variables DATABASE_URL and DATABASE_NAME
Fallback: Mongita (embedded, file-based MongoDB-compatible client) when env vars
          are not provided. MONGITA_MODE=memory selects the in-memory client.

MongoRecordStore adapts a database handle to the three operations the game needs
(select, insert, update) as coroutines; the blocking driver calls run in the
threadpool.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from config import DATABASE_NAME, DATABASE_URL, FALLBACK_DATABASE_NAME, MONGITA_MODE
from errors import TransientIO, WriteFailure
from schemas import now_ms

logger = logging.getLogger(__name__)

ASCENDING = 1
DESCENDING = -1

_client = None
db = None


def connect():
    """Open the configured database. Returns (client, db) or (None, None)."""
    try:
        if DATABASE_URL and DATABASE_NAME:
            from pymongo import MongoClient  # type: ignore
            client = MongoClient(DATABASE_URL)
            return client, client[DATABASE_NAME]
        if MONGITA_MODE == "memory":
            from mongita import MongitaClientMemory  # type: ignore
            client = MongitaClientMemory()
        else:
            # Fallback to Mongita (embedded MongoDB-like client)
            from mongita import MongitaClientDisk  # type: ignore
            client = MongitaClientDisk()
        return client, client[FALLBACK_DATABASE_NAME]
    except Exception as e:
        logger.warning("primary database unavailable (%s); using in-memory store", e)
        # As an ultimate fallback, try Mongita in-memory so the API stays usable
        try:
            from mongita import MongitaClientMemory  # type: ignore
            client = MongitaClientMemory()
            return client, client[f"{FALLBACK_DATABASE_NAME}_runtime"]
        except Exception:
            logger.exception("no database could be opened")
            return None, None


_client, db = connect()


def _strip(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


class MongoRecordStore:
    """Async select/insert/update over a pymongo or mongita database."""

    def __init__(self, database):
        self.database = database

    def _require(self):
        if self.database is None:
            raise TransientIO(
                "Database not available. Ensure DATABASE_URL & DATABASE_NAME are set or fallback is working."
            )
        return self.database

    # ---------- blocking implementations ----------

    def _select(self, collection, filter_dict, sort, limit) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if sort:
            kwargs["sort"] = list(sort)
        if limit:
            kwargs["limit"] = limit
        cursor = self._require()[collection].find(filter_dict or {}, **kwargs)
        return [_strip(d) for d in cursor]

    def _insert(self, collection, docs: List[Dict[str, Any]]) -> None:
        coll = self._require()[collection]
        if len(docs) == 1:
            coll.insert_one(docs[0])
        else:
            coll.insert_many(docs)

    def _update(self, collection, record_id, fields) -> bool:
        result = self._require()[collection].update_one({"id": record_id}, {"$set": fields})
        return getattr(result, "matched_count", 0) > 0

    # ---------- coroutine API ----------

    async def select(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            return await run_in_threadpool(self._select, collection, filter_dict, sort, limit)
        except TransientIO:
            raise
        except Exception as e:
            logger.warning("select on %s failed: %s", collection, e)
            raise TransientIO(f"select on {collection} failed") from e

    async def insert(self, collection: str, data: Union[BaseModel, dict, List[Union[BaseModel, dict]]]) -> None:
        """Insert one document or a batch. Pydantic models are dumped first."""
        items = data if isinstance(data, list) else [data]
        if not items:
            return
        now = now_ms()
        docs = []
        for item in items:
            # Copy to avoid mutating caller's data
            doc = item.model_dump() if isinstance(item, BaseModel) else dict(item)
            doc["updated_at"] = now
            docs.append(doc)
        try:
            await run_in_threadpool(self._insert, collection, docs)
        except TransientIO as e:
            raise WriteFailure(str(e)) from e
        except Exception as e:
            logger.warning("insert into %s failed: %s", collection, e)
            raise WriteFailure(f"insert into {collection} failed") from e

    async def update(self, collection: str, record_id: str, fields: Dict[str, Any]) -> bool:
        """Set `fields` on the document with the given id. Returns False when nothing matched."""
        fields = {**fields, "updated_at": now_ms()}
        try:
            return await run_in_threadpool(self._update, collection, record_id, fields)
        except TransientIO as e:
            raise WriteFailure(str(e)) from e
        except Exception as e:
            logger.warning("update on %s failed: %s", collection, e)
            raise WriteFailure(f"update on {collection} failed") from e

    def collection_names(self) -> List[str]:
        return self._require().list_collection_names()


def get_store() -> MongoRecordStore:
    return MongoRecordStore(db)
