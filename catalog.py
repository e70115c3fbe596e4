"""
Record-store operations for challenges, guesses, collections and attempts.

Every function takes the record store as its first argument (anything with
async select/insert/update). Reads raise TransientIO, writes raise WriteFailure;
absence is signalled with None or an empty list.
"""
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel

import ledger
from config import LEADERBOARD_SIZE, MAX_COLLECTION_ITEMS, MAX_COLLECTION_NAME_LEN
from database import ASCENDING, DESCENDING
from errors import GameError, NotFound
from geoscore import score_guess
from schemas import (
    Challenge,
    CollectionAttempt,
    CollectionDescriptor,
    GeoPoint,
    GuessRecord,
    Player,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)

CHALLENGE = "challenge"
GUESS = "guess"
COLLECTION = "collection"
COLLECTION_ITEM = "collection_item"
COLLECTION_ATTEMPT = "collection_attempt"


class InvalidCollection(GameError):
    pass


class PreAnswered(BaseModel):
    score: int
    distance_meters: float


class CollectionSummary(BaseModel):
    id: str
    name: str
    author_id: str
    author_name: str
    created_at: int
    item_count: int
    total_completions: int = 0
    avg_total_score: int = 0


class PlayedCollection(BaseModel):
    id: str
    name: str
    author_id: str
    author_name: str
    created_at: int
    item_count: int
    my_score: int
    completed_at: int


class Leaderboard(BaseModel):
    top: List[CollectionAttempt]
    mine: Optional[ledger.RankedAttempt] = None


class CollectionStats(BaseModel):
    total_completions: int
    avg_total_score: int
    per_challenge: List[ledger.ChallengeAverage]


# ---------- Challenges ----------

async def create_challenge(store, challenge: Challenge) -> Challenge:
    if not challenge.location_name:
        # Keep a readable label when reverse geocoding gave nothing
        loc = challenge.location
        challenge = challenge.model_copy(update={"location_name": f"{loc.lat:.3f}°N, {loc.lng:.3f}°E"})
    await store.insert(CHALLENGE, challenge)
    logger.info("challenge %s created by %s", challenge.id, challenge.author_id)
    return challenge


async def get_challenge(store, challenge_id: str) -> Optional[Challenge]:
    rows = await store.select(CHALLENGE, {"id": challenge_id}, limit=1)
    return Challenge.model_validate(rows[0]) if rows else None


async def list_challenges_by_author(store, author_id: str) -> List[Challenge]:
    rows = await store.select(CHALLENGE, {"author_id": author_id}, sort=[("created_at", DESCENDING)])
    return [Challenge.model_validate(r) for r in rows]


async def rate_challenge(store, challenge_id: str, liked: bool) -> int:
    """Apply a like or unlike and return the new like count (never below zero)."""
    challenge = await get_challenge(store, challenge_id)
    if challenge is None:
        raise NotFound(f"challenge {challenge_id}")
    likes = challenge.likes + 1 if liked else max(0, challenge.likes - 1)
    await store.update(CHALLENGE, challenge_id, {"likes": likes})
    return likes


async def next_unplayed_challenge(store, user_id: str) -> Optional[Challenge]:
    """Newest challenge by someone else that the user has not guessed yet."""
    played = {g.challenge_id for g in await guesses_for_user(store, user_id)}
    rows = await store.select(CHALLENGE, {"author_id": {"$ne": user_id}}, sort=[("created_at", DESCENDING)])
    for row in rows:
        if row["id"] not in played:
            return Challenge.model_validate(row)
    return None


# ---------- Guesses ----------

async def save_guess(store, challenge: Challenge, player: Player, location: GeoPoint) -> GuessRecord:
    distance, score = score_guess(challenge.location, location)
    guess = GuessRecord(
        challenge_id=challenge.id,
        user_id=player.id,
        user_name=player.name,
        location=location,
        distance_meters=distance,
        score=score,
    )
    await store.insert(GUESS, guess)
    return guess


async def guesses_for_challenge(store, challenge_id: str) -> List[GuessRecord]:
    rows = await store.select(GUESS, {"challenge_id": challenge_id}, sort=[("timestamp", ASCENDING)])
    return [GuessRecord.model_validate(r) for r in rows]


async def guesses_for_user(store, user_id: str, limit: Optional[int] = None) -> List[GuessRecord]:
    rows = await store.select(GUESS, {"user_id": user_id}, sort=[("timestamp", DESCENDING)], limit=limit)
    return [GuessRecord.model_validate(r) for r in rows]


async def has_played(store, challenge_id: str, user_id: str) -> bool:
    rows = await store.select(GUESS, {"challenge_id": challenge_id, "user_id": user_id}, limit=1)
    return bool(rows)


async def pre_answered(store, user_id: str, challenge_ids: List[str]) -> Dict[str, PreAnswered]:
    """Which of `challenge_ids` the user already guessed, in one query.

    With duplicate rows the earliest guess wins; that is the one the player actually made.
    """
    if not challenge_ids:
        return {}
    rows = await store.select(GUESS, {"user_id": user_id, "challenge_id": {"$in": list(challenge_ids)}})
    found: Dict[str, GuessRecord] = {}
    for row in rows:
        g = GuessRecord.model_validate(row)
        prev = found.get(g.challenge_id)
        if prev is None or g.timestamp < prev.timestamp:
            found[g.challenge_id] = g
    return {cid: PreAnswered(score=g.score, distance_meters=g.distance_meters) for cid, g in found.items()}


# ---------- Collections ----------

def _validate_collection(name: str, challenge_ids: List[str]) -> str:
    name = name.strip()
    if not name:
        raise InvalidCollection("collection name is required")
    if len(name) > MAX_COLLECTION_NAME_LEN:
        raise InvalidCollection(f"collection name is limited to {MAX_COLLECTION_NAME_LEN} characters")
    if not challenge_ids:
        raise InvalidCollection("a collection needs at least one challenge")
    if len(challenge_ids) > MAX_COLLECTION_ITEMS:
        raise InvalidCollection(f"a collection holds at most {MAX_COLLECTION_ITEMS} challenges")
    if len(set(challenge_ids)) != len(challenge_ids):
        raise InvalidCollection("a challenge can appear only once in a collection")
    return name


async def create_collection(store, name: str, challenge_ids: List[str], author: Player) -> CollectionDescriptor:
    name = _validate_collection(name, challenge_ids)
    collection = CollectionDescriptor(
        name=name,
        author_id=author.id,
        author_name=author.name,
        ordered_challenge_ids=list(challenge_ids),
    )
    # Items go in first; readers only find a collection through its header
    await store.insert(COLLECTION_ITEM, [
        {"id": new_id(), "collection_id": collection.id, "challenge_id": cid, "order_index": n}
        for n, cid in enumerate(challenge_ids)
    ])
    await store.insert(COLLECTION, {
        "id": collection.id,
        "name": collection.name,
        "author_id": collection.author_id,
        "author_name": collection.author_name,
        "item_count": collection.item_count,
        "created_at": collection.created_at,
    })
    logger.info("collection %s created with %d challenges", collection.id, collection.item_count)
    return collection


async def get_collection(store, collection_id: str) -> Optional[CollectionDescriptor]:
    rows = await store.select(COLLECTION, {"id": collection_id}, limit=1)
    if not rows:
        return None
    items = await store.select(COLLECTION_ITEM, {"collection_id": collection_id}, sort=[("order_index", ASCENDING)])
    row = rows[0]
    return CollectionDescriptor(
        id=row["id"],
        name=row["name"],
        author_id=row["author_id"],
        author_name=row["author_name"],
        created_at=row["created_at"],
        ordered_challenge_ids=[i["challenge_id"] for i in sorted(items, key=lambda i: i["order_index"])],
    )


def _summary(row: dict) -> CollectionSummary:
    return CollectionSummary(
        id=row["id"],
        name=row["name"],
        author_id=row["author_id"],
        author_name=row["author_name"],
        created_at=row["created_at"],
        item_count=row.get("item_count", 0),
    )


async def _attempts_for(store, collection_ids: List[str]) -> List[CollectionAttempt]:
    if not collection_ids:
        return []
    rows = await store.select(COLLECTION_ATTEMPT, {"collection_id": {"$in": collection_ids}})
    return [CollectionAttempt.model_validate(r) for r in rows]


async def _with_stats(store, summaries: List[CollectionSummary]) -> List[CollectionSummary]:
    by_collection: Dict[str, List[CollectionAttempt]] = {}
    for attempt in await _attempts_for(store, [s.id for s in summaries]):
        by_collection.setdefault(attempt.collection_id, []).append(attempt)
    for s in summaries:
        agg = ledger.aggregate(by_collection.get(s.id, []))
        s.total_completions = agg.completions
        s.avg_total_score = agg.avg_score
    return summaries


async def list_collections(store, page: int = 0, page_size: int = 20) -> List[CollectionSummary]:
    page = max(page, 0)
    rows = await store.select(COLLECTION, sort=[("created_at", DESCENDING)], limit=(page + 1) * page_size)
    rows = rows[page * page_size:(page + 1) * page_size]
    return await _with_stats(store, [_summary(r) for r in rows])


async def list_collections_by_author(store, author_id: str) -> List[CollectionSummary]:
    rows = await store.select(COLLECTION, {"author_id": author_id}, sort=[("created_at", DESCENDING)])
    return await _with_stats(store, [_summary(r) for r in rows])


async def list_played_collections(store, user_id: str) -> List[PlayedCollection]:
    rows = await store.select(COLLECTION_ATTEMPT, {"user_id": user_id}, sort=[("completed_at", DESCENDING)])
    best = ledger.best_per_collection(CollectionAttempt.model_validate(r) for r in rows)
    if not best:
        return []
    collections = {r["id"]: r for r in await store.select(COLLECTION, {"id": {"$in": list(best)}})}
    played = []
    for collection_id, attempt in best.items():
        row = collections.get(collection_id)
        if row is None:
            continue
        played.append(PlayedCollection(
            **_summary(row).model_dump(include={"id", "name", "author_id", "author_name", "created_at", "item_count"}),
            my_score=attempt.total_score,
            completed_at=attempt.completed_at,
        ))
    played.sort(key=lambda p: p.completed_at, reverse=True)
    return played


async def collection_stats(store, collection_id: str) -> CollectionStats:
    collection = await get_collection(store, collection_id)
    if collection is None:
        raise NotFound(f"collection {collection_id}")
    agg = ledger.aggregate(await _attempts_for(store, [collection_id]))
    ids = collection.ordered_challenge_ids
    guesses = []
    if ids:
        rows = await store.select(GUESS, {"challenge_id": {"$in": ids}})
        guesses = [GuessRecord.model_validate(r) for r in rows]
    return CollectionStats(
        total_completions=agg.completions,
        avg_total_score=agg.avg_score,
        per_challenge=ledger.per_challenge_average(ids, guesses),
    )


# ---------- Attempts ----------

async def submit_attempt(store, collection_id: str, player: Player, total_score: int) -> CollectionAttempt:
    """Insert the player's attempt, or raise the stored best when `total_score` beats it.

    A lower or equal score leaves the stored attempt untouched.
    """
    rows = await store.select(COLLECTION_ATTEMPT, {"collection_id": collection_id, "user_id": player.id})
    best = ledger.best_per_user(CollectionAttempt.model_validate(r) for r in rows).get(player.id)

    if best is None:
        attempt = CollectionAttempt(
            collection_id=collection_id,
            user_id=player.id,
            user_name=player.name,
            total_score=total_score,
        )
        await store.insert(COLLECTION_ATTEMPT, attempt)
        logger.info("attempt on %s by %s: %d", collection_id, player.id, total_score)
        return attempt

    if total_score > best.total_score:
        completed_at = now_ms()
        await store.update(COLLECTION_ATTEMPT, best.id, {
            "total_score": total_score,
            "completed_at": completed_at,
            "user_name": player.name,
        })
        logger.info("attempt on %s by %s raised %d -> %d", collection_id, player.id, best.total_score, total_score)
        return best.model_copy(update={
            "total_score": total_score,
            "completed_at": completed_at,
            "user_name": player.name,
        })
    return best


async def leaderboard(store, collection_id: str, user_id: Optional[str] = None,
                      n: int = LEADERBOARD_SIZE) -> Leaderboard:
    rows = await store.select(
        COLLECTION_ATTEMPT,
        {"collection_id": collection_id},
        sort=[("total_score", DESCENDING), ("completed_at", ASCENDING)],
    )
    attempts = [CollectionAttempt.model_validate(r) for r in rows]
    mine = ledger.rank_of(user_id, attempts, n) if user_id else None
    return Leaderboard(top=ledger.top_n(attempts, n), mine=mine)
