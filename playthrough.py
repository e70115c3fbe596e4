"""
Collection playthrough state machine

One engine drives one player through one collection:

    INITIALIZING -> LOADING <-> {PLAYING, HISTORICAL} -> REVIEWING -> LOADING(next) ... -> COMPLETED

Questions the player already answered elsewhere are shown as HISTORICAL and their
old score is folded into the collection total. The next challenge is prefetched
while the current one is being played. Every fetch is tagged with a generation
number; a result that arrives after the player moved on (or left) is dropped.

Operations never raise. Each returns a PlaythroughView; failures are reported in
its `error` field and `can_retry` tells the caller whether retry() will redo them.
"""
import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

import catalog
from errors import DataAnomaly, ErrorKind, GameError, TransientIO, WriteFailure
from geoscore import format_distance
from schemas import (
    Challenge,
    CollectionAttempt,
    CollectionDescriptor,
    CollectionProgress,
    CompletedItem,
    GeoPoint,
    Player,
    now_ms,
)

logger = logging.getLogger(__name__)


class PlayState(str, Enum):
    INITIALIZING = "initializing"
    LOADING = "loading"
    PLAYING = "playing"
    HISTORICAL = "historical"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    UNAVAILABLE = "unavailable"


class ChallengeCard(BaseModel):
    """What the player sees while guessing; the answer is left out."""
    id: str
    image_ref: str
    author_name: str
    created_at: int
    likes: int


class QuestionResult(BaseModel):
    challenge_id: str
    score: int
    distance_meters: float
    distance_label: str
    historical: bool = False
    guess: Optional[GeoPoint] = None
    truth: Optional[GeoPoint] = None
    location_name: Optional[str] = None


class PlaythroughView(BaseModel):
    collection_id: str
    collection_name: Optional[str] = None
    user_id: str
    state: PlayState
    index: int
    total: int
    is_last: bool = False
    challenge: Optional[ChallengeCard] = None
    result: Optional[QuestionResult] = None
    progress: Optional[CollectionProgress] = None
    attempt: Optional[CollectionAttempt] = None
    error: Optional[ErrorKind] = None
    can_retry: bool = False


class PlaythroughEngine:
    def __init__(self, collection_id: str, player: Player, records, progress_store,
                 collection: Optional[CollectionDescriptor] = None):
        self.collection_id = collection_id
        self.player = player
        self.records = records
        self.progress_store = progress_store
        self.collection = collection

        self.state = PlayState.INITIALIZING
        self.index = 0
        self.challenge: Optional[Challenge] = None
        self.result: Optional[QuestionResult] = None
        self.attempt: Optional[CollectionAttempt] = None
        self.error: Optional[ErrorKind] = None

        self._progress: Optional[CollectionProgress] = None
        self._pre_answered: Dict[str, catalog.PreAnswered] = {}
        self._prefetch: Optional[asyncio.Task] = None
        self._prefetch_id: Optional[str] = None
        self._generation = 0
        self._submitting = False
        self._retry: Optional[Tuple[str, Optional[int]]] = None

    @classmethod
    async def open(cls, collection_id: str, player: Player, records, progress_store) -> "PlaythroughEngine":
        """Load the collection up front; a missing or empty one gives an UNAVAILABLE engine.

        A failed read leaves the collection unloaded with a retry of start() pending.
        """
        engine = cls(collection_id, player, records, progress_store)
        try:
            collection = await catalog.get_collection(records, collection_id)
        except TransientIO as e:
            engine._fail(e, ("start", None))
            return engine
        if collection is None or not collection.ordered_challenge_ids:
            engine.state = PlayState.UNAVAILABLE
        else:
            engine.collection = collection
        return engine

    # ---------- view ----------

    @property
    def challenge_ids(self):
        return self.collection.ordered_challenge_ids if self.collection else []

    @property
    def progress(self) -> Optional[CollectionProgress]:
        return self._progress

    def view(self, error: Optional[ErrorKind] = None) -> PlaythroughView:
        total = len(self.challenge_ids)
        card = None
        if self.state is PlayState.PLAYING and self.challenge is not None:
            card = ChallengeCard(**self.challenge.model_dump(include={"id", "image_ref", "author_name",
                                                                      "created_at", "likes"}))
        return PlaythroughView(
            collection_id=self.collection_id,
            collection_name=self.collection.name if self.collection else None,
            user_id=self.player.id,
            state=self.state,
            index=self.index,
            total=total,
            is_last=total > 0 and self.index == total - 1,
            challenge=card,
            result=self.result,
            progress=self._progress,
            attempt=self.attempt,
            error=error or self.error,
            can_retry=self._retry is not None,
        )

    # ---------- helpers ----------

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _fail(self, exc: GameError, retry: Tuple[str, Optional[int]]) -> PlaythroughView:
        logger.warning("playthrough %s/%s: %s", self.collection_id, self.player.id, exc)
        self.error = exc.kind
        self._retry = retry
        return self.view()

    def _persist(self) -> bool:
        try:
            self.progress_store.put(self._progress)
            return True
        except OSError as e:
            logger.error("could not save progress for %s/%s: %s", self.collection_id, self.player.id, e)
            self.error = ErrorKind.WRITE_FAILURE
            return False

    def _restore(self) -> CollectionProgress:
        saved = self.progress_store.get(self.collection_id, self.player.id)
        if saved is None:
            self._progress = CollectionProgress(collection_id=self.collection_id, user_id=self.player.id)
            self._persist()
            return self._progress
        try:
            saved.check(self.challenge_ids)
        except DataAnomaly as e:
            logger.warning("repairing progress %s/%s: %s", self.collection_id, self.player.id, e)
            saved = saved.repaired(self.challenge_ids)
            self._progress = saved
            self._persist()
        self._progress = saved
        return saved

    def _cancel_prefetch(self):
        if self._prefetch is not None and not self._prefetch.done():
            self._prefetch.cancel()
        self._prefetch = None
        self._prefetch_id = None

    async def _prefetch_one(self, challenge_id: str) -> Optional[Challenge]:
        try:
            return await catalog.get_challenge(self.records, challenge_id)
        except GameError as e:
            # The real load fetches again and reports the failure itself
            logger.debug("prefetch of %s failed: %s", challenge_id, e)
            return None

    def _start_prefetch(self, index: int):
        self._cancel_prefetch()
        ids = self.challenge_ids
        if index >= len(ids):
            return
        next_id = ids[index]
        if next_id in self._pre_answered or self._progress.has_item(next_id):
            return
        self._prefetch_id = next_id
        self._prefetch = asyncio.create_task(self._prefetch_one(next_id))

    async def _fetch(self, challenge_id: str) -> Optional[Challenge]:
        task, task_id = self._prefetch, self._prefetch_id
        self._prefetch = None
        self._prefetch_id = None
        if task is not None and task_id == challenge_id and not task.cancelled():
            prefetched = await task
            if prefetched is not None:
                return prefetched
        elif task is not None:
            task.cancel()
        return await catalog.get_challenge(self.records, challenge_id)

    def _show_historical(self, item: CompletedItem):
        self.challenge = None
        self.result = QuestionResult(
            challenge_id=item.challenge_id,
            score=item.score,
            distance_meters=item.distance_meters,
            distance_label=format_distance(item.distance_meters),
            historical=True,
        )
        self.state = PlayState.HISTORICAL

    # ---------- transitions ----------

    async def start(self, start_index: Optional[int] = None) -> PlaythroughView:
        """Restore progress, look up pre-answered questions and load the resume point."""
        gen = self._next_generation()
        self.state = PlayState.INITIALIZING
        self.error = None
        self._retry = None

        if self.collection is None:
            try:
                collection = await catalog.get_collection(self.records, self.collection_id)
            except TransientIO as e:
                return self._fail(e, ("start", start_index))
            if gen != self._generation:
                return self.view()
            self.collection = collection
        if not self.challenge_ids:
            logger.info("collection %s is unavailable", self.collection_id)
            self.state = PlayState.UNAVAILABLE
            return self.view()

        progress = self._restore()

        try:
            pre = await catalog.pre_answered(self.records, self.player.id, self.challenge_ids)
        except TransientIO as e:
            return self._fail(e, ("start", start_index))
        if gen != self._generation:
            return self.view()
        self._pre_answered = pre

        # Only answered questions can be revisited; anything later resumes at the first unanswered one
        resume = len(progress.completed_items)
        index = resume if start_index is None else min(max(start_index, 0), resume)
        logger.info("playthrough %s/%s starting at %d of %d (%d pre-answered)",
                    self.collection_id, self.player.id, index, len(self.challenge_ids), len(pre))
        return await self.load(index)

    async def load(self, index: int) -> PlaythroughView:
        """Show question `index`: historical summary, a fresh challenge, or completion."""
        if self._progress is None:
            return self.view(error=ErrorKind.INVALID)

        gen = self._next_generation()
        self.error = None
        self._retry = None
        ids = self.challenge_ids

        while True:
            self.index = index
            self.challenge = None
            self.result = None
            if index >= len(ids):
                return await self._finish()

            self.state = PlayState.LOADING
            challenge_id = ids[index]

            recorded = self._progress.item_for(challenge_id)
            if recorded is not None:
                self._show_historical(recorded)
                return self.view()

            pre = self._pre_answered.get(challenge_id)
            if pre is not None:
                item = CompletedItem(challenge_id=challenge_id, score=pre.score,
                                     distance_meters=pre.distance_meters)
                self._progress = self._progress.with_item(item)
                self._persist()
                self._show_historical(item)
                return self.view()

            try:
                challenge = await self._fetch(challenge_id)
            except TransientIO as e:
                if gen != self._generation:
                    return self.view()
                return self._fail(e, ("load", index))
            if gen != self._generation:
                logger.debug("dropping stale fetch of %s", challenge_id)
                return self.view()

            if challenge is None:
                logger.info("challenge %s is gone; skipping question %d", challenge_id, index)
                index += 1
                continue

            self.challenge = challenge
            self.state = PlayState.PLAYING
            self._start_prefetch(index + 1)
            return self.view()

    async def submit_guess(self, location: GeoPoint) -> PlaythroughView:
        """Score and save a guess for the question being played, then show the review."""
        if self._submitting:
            return self.view(error=ErrorKind.BUSY)
        if self.state is not PlayState.PLAYING or self.challenge is None:
            return self.view(error=ErrorKind.INVALID)

        self._submitting = True
        gen = self._generation
        challenge = self.challenge
        try:
            try:
                guess = await catalog.save_guess(self.records, challenge, self.player, location)
            except WriteFailure as e:
                # Nothing was saved; the player stays on the question and may submit again
                if gen != self._generation:
                    return self.view()
                self.error = e.kind
                return self.view()

            item = CompletedItem(challenge_id=challenge.id, score=guess.score,
                                 distance_meters=guess.distance_meters)
            self._pre_answered[challenge.id] = catalog.PreAnswered(score=guess.score,
                                                                   distance_meters=guess.distance_meters)
            self._progress = self._progress.with_item(item)
            self.error = None
            self._persist()

            if gen != self._generation:
                return self.view()
            self.result = QuestionResult(
                challenge_id=challenge.id,
                score=guess.score,
                distance_meters=guess.distance_meters,
                distance_label=format_distance(guess.distance_meters),
                guess=location,
                truth=challenge.location,
                location_name=challenge.location_name,
            )
            self.state = PlayState.REVIEWING
            return self.view()
        finally:
            self._submitting = False

    async def advance(self) -> PlaythroughView:
        if self.state not in (PlayState.HISTORICAL, PlayState.REVIEWING):
            return self.view(error=ErrorKind.INVALID)
        return await self.load(self.index + 1)

    async def retry(self) -> PlaythroughView:
        pending = self._retry
        if pending is None:
            return self.view(error=ErrorKind.INVALID)
        step, arg = pending
        if step == "start":
            return await self.start(arg)
        if step == "load":
            return await self.load(arg)
        self.error = None
        self._retry = None
        return await self._submit_attempt()

    def leave(self) -> PlaythroughView:
        """The player backs out; anything still in flight is ignored when it lands."""
        self._next_generation()
        self._cancel_prefetch()
        return self.view()

    async def _finish(self) -> PlaythroughView:
        self._cancel_prefetch()
        progress = self._progress
        if not progress.is_completed:
            progress = progress.model_copy(update={"is_completed": True, "completed_at": now_ms()})
        self._progress = progress
        self._persist()
        self.index = len(self.challenge_ids)
        self.state = PlayState.COMPLETED
        logger.info("playthrough %s/%s completed with %d", self.collection_id, self.player.id,
                    progress.total_score)
        return await self._submit_attempt()

    async def _submit_attempt(self) -> PlaythroughView:
        try:
            self.attempt = await catalog.submit_attempt(self.records, self.collection_id, self.player,
                                                        self._progress.total_score)
        except GameError as e:
            logger.warning("attempt for %s/%s not saved: %s", self.collection_id, self.player.id, e)
            self.error = ErrorKind.WRITE_FAILURE
            self._retry = ("attempt", None)
        return self.view()
