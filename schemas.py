"""
Database Schemas for the photo-location guessing game

Each stored Pydantic model represents a MongoDB collection. The collection name is
named in each docstring. Timestamps are integer epoch milliseconds.
"""
import time
import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from errors import DataAnomaly


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class GeoPoint(BaseModel):
    """WGS84 coordinate in degrees; the only frame ever stored or scored."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Player(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class Challenge(BaseModel):
    """
    Collection: "challenge"
    A single image + location puzzle
    """
    id: str = Field(default_factory=new_id)
    image_ref: str = Field(..., description="Opaque reference to the uploaded image")
    location: GeoPoint
    location_name: Optional[str] = None
    author_id: str
    author_name: str
    created_at: int = Field(default_factory=now_ms)
    likes: int = Field(0, ge=0)


class GuessRecord(BaseModel):
    """
    Collection: "guess"
    One per (user, challenge) under normal flow; duplicates are tolerated
    """
    id: str = Field(default_factory=new_id)
    challenge_id: str
    user_id: str
    user_name: str
    location: GeoPoint
    distance_meters: float = Field(..., ge=0)
    score: int = Field(..., ge=0, le=5000)
    timestamp: int = Field(default_factory=now_ms)


class CollectionDescriptor(BaseModel):
    """
    Collections: "collection" + "collection_item"
    The challenge order is fixed at creation time
    """
    id: str = Field(default_factory=new_id)
    name: str
    author_id: str
    author_name: str
    created_at: int = Field(default_factory=now_ms)
    ordered_challenge_ids: List[str] = Field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.ordered_challenge_ids)


class CollectionAttempt(BaseModel):
    """
    Collection: "collection_attempt"
    One completed playthrough; the best total per user is canonical
    """
    id: str = Field(default_factory=new_id)
    collection_id: str
    user_id: str
    user_name: str
    total_score: int = Field(..., ge=0)
    completed_at: int = Field(default_factory=now_ms)


class CompletedItem(BaseModel):
    challenge_id: str
    score: int = Field(..., ge=0, le=5000)
    distance_meters: float = Field(..., ge=0)


class CollectionProgress(BaseModel):
    """Device-local resume checkpoint for one (collection, user) pair. Never synced."""
    collection_id: str
    user_id: str
    completed_items: List[CompletedItem] = Field(default_factory=list)
    is_completed: bool = False
    total_score: int = 0
    started_at: int = Field(default_factory=now_ms)
    completed_at: Optional[int] = None

    def has_item(self, challenge_id: str) -> bool:
        return any(i.challenge_id == challenge_id for i in self.completed_items)

    def item_for(self, challenge_id: str) -> Optional[CompletedItem]:
        for item in self.completed_items:
            if item.challenge_id == challenge_id:
                return item
        return None

    def with_item(self, item: CompletedItem) -> "CollectionProgress":
        """Return a copy with `item` appended; a repeated challenge id is a no-op."""
        if self.has_item(item.challenge_id):
            return self
        return self.model_copy(update={
            "completed_items": [*self.completed_items, item],
            "total_score": self.total_score + item.score,
        })

    def check(self, ordered_challenge_ids: Optional[List[str]] = None) -> None:
        ids = [i.challenge_id for i in self.completed_items]
        if len(set(ids)) != len(ids):
            raise DataAnomaly("duplicate challenge ids in progress")
        if self.total_score != sum(i.score for i in self.completed_items):
            raise DataAnomaly("total_score does not match completed items")
        if ordered_challenge_ids is not None:
            positions = {cid: n for n, cid in enumerate(ordered_challenge_ids)}
            known = [positions[cid] for cid in ids if cid in positions]
            if known != sorted(known):
                raise DataAnomaly("completed items out of collection order")

    def repaired(self, ordered_challenge_ids: Optional[List[str]] = None) -> "CollectionProgress":
        """Drop repeated items, restore collection order and recompute the total."""
        seen = set()
        items = []
        for item in self.completed_items:
            if item.challenge_id in seen:
                continue
            seen.add(item.challenge_id)
            items.append(item)
        if ordered_challenge_ids is not None:
            positions = {cid: n for n, cid in enumerate(ordered_challenge_ids)}
            # Items no longer in the collection keep their relative place at the end
            items.sort(key=lambda i: positions.get(i.challenge_id, len(positions)))
        return self.model_copy(update={
            "completed_items": items,
            "total_score": sum(i.score for i in items),
        })
