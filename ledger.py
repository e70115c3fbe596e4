"""
Leaderboard reductions over collection attempts

The record store may hold several attempts per user for one collection (older
clients submitted more than once). Every reader goes through these functions so
the rule is applied the same way everywhere: the best total per user counts,
ties go to the earliest completion. Nothing is ever deleted.
"""
import logging
from math import floor
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from schemas import CollectionAttempt, GuessRecord

logger = logging.getLogger(__name__)


class RankedAttempt(BaseModel):
    record: CollectionAttempt
    rank: int
    is_in_top_n: bool


class Aggregate(BaseModel):
    completions: int
    avg_score: int


class ChallengeAverage(BaseModel):
    challenge_id: str
    avg_score: int


def _better(a: CollectionAttempt, b: CollectionAttempt) -> bool:
    if a.total_score != b.total_score:
        return a.total_score > b.total_score
    return a.completed_at < b.completed_at


def _ranking_key(a: CollectionAttempt):
    # user_id last so equal score and time still order deterministically
    return (-a.total_score, a.completed_at, a.user_id)


def _mean(values: List[int]) -> int:
    if not values:
        return 0
    return int(floor(sum(values) / len(values) + 0.5))


def best_per_user(records: Iterable[CollectionAttempt]) -> Dict[str, CollectionAttempt]:
    best: Dict[str, CollectionAttempt] = {}
    total = 0
    for rec in records:
        total += 1
        prev = best.get(rec.user_id)
        if prev is None or _better(rec, prev):
            best[rec.user_id] = rec
    if total > len(best):
        logger.debug("collapsed %d duplicate attempt rows", total - len(best))
    return best


def ranked(records: Iterable[CollectionAttempt]) -> List[CollectionAttempt]:
    return sorted(best_per_user(records).values(), key=_ranking_key)


def top_n(records: Iterable[CollectionAttempt], n: int) -> List[CollectionAttempt]:
    return ranked(records)[:max(n, 0)]


def rank_of(user_id: str, records: Iterable[CollectionAttempt], n: int = 10) -> Optional[RankedAttempt]:
    """The user's deduplicated record and 1-based rank, also when outside the top n."""
    for pos, rec in enumerate(ranked(records), start=1):
        if rec.user_id == user_id:
            return RankedAttempt(record=rec, rank=pos, is_in_top_n=pos <= n)
    return None


def aggregate(records: Iterable[CollectionAttempt]) -> Aggregate:
    best = best_per_user(records)
    return Aggregate(
        completions=len(best),
        avg_score=_mean([r.total_score for r in best.values()]),
    )


def best_per_collection(records: Iterable[CollectionAttempt]) -> Dict[str, CollectionAttempt]:
    """One player's attempts reduced to their best per collection."""
    best: Dict[str, CollectionAttempt] = {}
    for rec in records:
        prev = best.get(rec.collection_id)
        if prev is None or _better(rec, prev):
            best[rec.collection_id] = rec
    return best


def per_challenge_average(challenge_ids: List[str], guesses: Iterable[GuessRecord]) -> List[ChallengeAverage]:
    scores: Dict[str, List[int]] = {cid: [] for cid in challenge_ids}
    for g in guesses:
        if g.challenge_id in scores:
            scores[g.challenge_id].append(g.score)
    return [ChallengeAverage(challenge_id=cid, avg_score=_mean(scores[cid])) for cid in challenge_ids]
