import logging
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import catalog
from config import LEADERBOARD_SIZE, LOG_LEVEL, PORT, PROGRESS_FILE
from coordspace import CoordSpace, Frame, RenderContext
from database import get_store
from errors import ErrorKind, GameError
from geoscore import format_distance
from playthrough import ChallengeCard, PlaythroughEngine, PlaythroughView, PlayState
from progress_store import JsonFileProgressStore
from schemas import Challenge, GeoPoint, GuessRecord, Player

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Photo Location Guess API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

coord_space = CoordSpace()
_progress_store = JsonFileProgressStore(PROGRESS_FILE)

# Live playthroughs keyed by (collection_id, user_id); finished ones are dropped
sessions: Dict[Tuple[str, str], PlaythroughEngine] = {}

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TRANSIENT_IO: 503,
    ErrorKind.WRITE_FAILURE: 503,
    ErrorKind.BUSY: 409,
    ErrorKind.INVALID: 400,
    ErrorKind.DATA_ANOMALY: 500,
}


def get_progress_store():
    return _progress_store


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content={"detail": str(exc), "kind": exc.kind.value})


# ---------- Models (request/response) ----------
class CreateChallengeRequest(BaseModel):
    image_ref: str
    location: GeoPoint
    location_name: Optional[str] = None
    author_id: str
    author_name: str


class GuessRequest(BaseModel):
    user_id: str
    user_name: str
    location: GeoPoint
    # When set, `location` is a raw map click in this frame
    frame: Optional[Frame] = None


class GuessResult(BaseModel):
    guess: GuessRecord
    truth: GeoPoint
    location_name: Optional[str] = None
    distance_label: str


class LikeRequest(BaseModel):
    liked: bool = True


class CreateCollectionRequest(BaseModel):
    name: str
    challenge_ids: List[str]
    author_id: str
    author_name: str


class PlayRequest(BaseModel):
    user_id: str
    user_name: str
    start_index: Optional[int] = Field(None, ge=0)


class PlayerRequest(BaseModel):
    user_id: str


class ReviewRequest(BaseModel):
    truth: GeoPoint
    guesses: List[GeoPoint] = Field(default_factory=list)
    frame: Optional[Frame] = None


class ClickRequest(BaseModel):
    point: GeoPoint
    frame: Frame


# ---------- Helpers ----------

def to_geodetic(location: GeoPoint, frame: Optional[Frame]) -> GeoPoint:
    if frame is None:
        return location
    return RenderContext(coord_space, frame).click(location)


def session_for(collection_id: str, user_id: str) -> PlaythroughEngine:
    engine = sessions.get((collection_id, user_id))
    if engine is None:
        raise HTTPException(404, "No playthrough in progress")
    return engine


def settle(engine: PlaythroughEngine, view: PlaythroughView) -> PlaythroughView:
    """Forget the session once nothing more can happen in it."""
    finished = view.state is PlayState.UNAVAILABLE or (view.state is PlayState.COMPLETED and not view.can_retry)
    key = (engine.collection_id, engine.player.id)
    if finished and sessions.get(key) is engine:
        sessions.pop(key)
    return view


# ---------- Routes ----------
@app.get("/")
def root():
    return {"message": "Photo Location Guess API running"}


@app.get("/test")
def test_database(store=Depends(get_store)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
        "active_playthroughs": len(sessions),
    }
    try:
        resp["collections"] = store.collection_names()[:10]
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except Exception as e:
        resp["database"] = f"❌ Error: {str(e)[:80]}"
    return resp


# Challenges

@app.post("/api/challenges")
async def create_challenge(payload: CreateChallengeRequest, store=Depends(get_store)):
    challenge = Challenge(**payload.model_dump())
    return await catalog.create_challenge(store, challenge)


@app.get("/api/challenges")
async def list_challenges(author_id: str, store=Depends(get_store)):
    return await catalog.list_challenges_by_author(store, author_id)


@app.get("/api/challenges/next")
async def next_challenge(user_id: str, store=Depends(get_store)):
    challenge = await catalog.next_unplayed_challenge(store, user_id)
    if challenge is None:
        return {"challenge": None}
    return {"challenge": ChallengeCard(**challenge.model_dump())}


@app.get("/api/challenges/{challenge_id}")
async def get_challenge(challenge_id: str, user_id: Optional[str] = None, store=Depends(get_store)):
    challenge = await catalog.get_challenge(store, challenge_id)
    if challenge is None:
        raise HTTPException(404, "Challenge not found")
    # The answer is only revealed to its author or to someone who already guessed
    if user_id and (user_id == challenge.author_id or await catalog.has_played(store, challenge_id, user_id)):
        return challenge
    return ChallengeCard(**challenge.model_dump())


@app.post("/api/challenges/{challenge_id}/guesses")
async def guess_challenge(challenge_id: str, payload: GuessRequest, store=Depends(get_store)):
    challenge = await catalog.get_challenge(store, challenge_id)
    if challenge is None:
        raise HTTPException(404, "Challenge not found")
    if await catalog.has_played(store, challenge_id, payload.user_id):
        raise HTTPException(409, "Challenge already played")

    player = Player(id=payload.user_id, name=payload.user_name)
    guess = await catalog.save_guess(store, challenge, player, to_geodetic(payload.location, payload.frame))
    return GuessResult(
        guess=guess,
        truth=challenge.location,
        location_name=challenge.location_name,
        distance_label=format_distance(guess.distance_meters),
    )


@app.get("/api/challenges/{challenge_id}/guesses")
async def challenge_guesses(challenge_id: str, store=Depends(get_store)):
    return await catalog.guesses_for_challenge(store, challenge_id)


@app.post("/api/challenges/{challenge_id}/like")
async def like_challenge(challenge_id: str, payload: LikeRequest, store=Depends(get_store)):
    likes = await catalog.rate_challenge(store, challenge_id, payload.liked)
    return {"id": challenge_id, "likes": likes}


@app.get("/api/users/{user_id}/guesses")
async def user_history(user_id: str, limit: int = 50, store=Depends(get_store)):
    return await catalog.guesses_for_user(store, user_id, limit=limit)


# Collections

@app.post("/api/collections")
async def create_collection(payload: CreateCollectionRequest, store=Depends(get_store)):
    author = Player(id=payload.author_id, name=payload.author_name)
    return await catalog.create_collection(store, payload.name, payload.challenge_ids, author)


@app.get("/api/collections")
async def list_collections(page: int = 0, page_size: int = 20, store=Depends(get_store)):
    return await catalog.list_collections(store, page, page_size)


@app.get("/api/users/{user_id}/collections")
async def my_collections(user_id: str, store=Depends(get_store)):
    return await catalog.list_collections_by_author(store, user_id)


@app.get("/api/users/{user_id}/played")
async def played_collections(user_id: str, store=Depends(get_store)):
    return await catalog.list_played_collections(store, user_id)


@app.get("/api/collections/{collection_id}")
async def get_collection(collection_id: str, user_id: Optional[str] = None, store=Depends(get_store),
                         progress_store=Depends(get_progress_store)):
    collection = await catalog.get_collection(store, collection_id)
    if collection is None:
        raise HTTPException(404, "Collection not found")
    resp = {"collection": collection, "item_count": collection.item_count, "progress": None}
    if user_id:
        progress = progress_store.get(collection_id, user_id)
        resp["progress"] = progress
        resp["resume_index"] = len(progress.completed_items) if progress else 0
    return resp


@app.get("/api/collections/{collection_id}/leaderboard")
async def collection_leaderboard(collection_id: str, user_id: Optional[str] = None,
                                 limit: int = LEADERBOARD_SIZE, store=Depends(get_store)):
    return await catalog.leaderboard(store, collection_id, user_id, limit)


@app.get("/api/collections/{collection_id}/stats")
async def collection_stats(collection_id: str, store=Depends(get_store)):
    return await catalog.collection_stats(store, collection_id)


# Playthrough

@app.post("/api/collections/{collection_id}/play", response_model=PlaythroughView)
async def start_play(collection_id: str, payload: PlayRequest, store=Depends(get_store),
                     progress_store=Depends(get_progress_store)):
    previous = sessions.pop((collection_id, payload.user_id), None)
    if previous is not None:
        previous.leave()
    player = Player(id=payload.user_id, name=payload.user_name)
    engine = await PlaythroughEngine.open(collection_id, player, store, progress_store)
    if engine.state is PlayState.UNAVAILABLE:
        return engine.view()
    sessions[(collection_id, payload.user_id)] = engine
    return settle(engine, await engine.start(payload.start_index))


@app.get("/api/collections/{collection_id}/play", response_model=PlaythroughView)
async def play_state(collection_id: str, user_id: str):
    return session_for(collection_id, user_id).view()


@app.post("/api/collections/{collection_id}/play/guess", response_model=PlaythroughView)
async def play_guess(collection_id: str, payload: GuessRequest):
    engine = session_for(collection_id, payload.user_id)
    return await engine.submit_guess(to_geodetic(payload.location, payload.frame))


@app.post("/api/collections/{collection_id}/play/next", response_model=PlaythroughView)
async def play_next(collection_id: str, payload: PlayerRequest):
    engine = session_for(collection_id, payload.user_id)
    return settle(engine, await engine.advance())


@app.post("/api/collections/{collection_id}/play/retry", response_model=PlaythroughView)
async def play_retry(collection_id: str, payload: PlayerRequest):
    engine = session_for(collection_id, payload.user_id)
    return settle(engine, await engine.retry())


@app.delete("/api/collections/{collection_id}/play", response_model=PlaythroughView)
async def leave_play(collection_id: str, user_id: str):
    engine = session_for(collection_id, user_id)
    sessions.pop((collection_id, user_id), None)
    return engine.leave()


# Map

@app.get("/api/map/frame")
def map_frame(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180)):
    point = GeoPoint(lat=lat, lng=lng)
    return {"frame": coord_space.pick_frame(point), "in_region": coord_space.in_region(point)}


@app.post("/api/map/review")
def map_review(payload: ReviewRequest):
    frame = payload.frame or coord_space.pick_frame(payload.truth)
    ctx = RenderContext(coord_space, frame)
    return {
        "frame": frame,
        "truth": ctx.marker(payload.truth),
        "guesses": [ctx.marker(g) for g in payload.guesses],
        "lines": [ctx.line(g, payload.truth) for g in payload.guesses],
        "bounds": ctx.fit_bounds([payload.truth, *payload.guesses]),
    }


@app.post("/api/map/click")
def map_click(payload: ClickRequest):
    return {"location": RenderContext(coord_space, payload.frame).click(payload.point)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
