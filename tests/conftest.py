import asyncio
import os
import uuid
from math import degrees
from typing import List

import pytest

# Keep the module-level database client off the disk during tests
os.environ["MONGITA_MODE"] = "memory"
os.environ.pop("DATABASE_URL", None)

from mongita import MongitaClientMemory  # noqa: E402

import catalog  # noqa: E402
from database import MongoRecordStore  # noqa: E402
from errors import TransientIO, WriteFailure  # noqa: E402
from geoscore import EARTH_RADIUS_M  # noqa: E402
from progress_store import MemoryProgressStore  # noqa: E402
from schemas import Challenge, GeoPoint, Player  # noqa: E402


def point_at_distance(origin: GeoPoint, meters: float) -> GeoPoint:
    """A point `meters` due north of `origin` along the meridian."""
    return GeoPoint(lat=origin.lat + degrees(meters / EARTH_RADIUS_M), lng=origin.lng)


def run(coro):
    return asyncio.run(coro)


class GatedStore:
    """Record store wrapper that can hold or fail calls per collection."""

    def __init__(self, inner):
        self.inner = inner
        self.select_gates = {}
        self.insert_gates = {}
        self.fail_reads = set()
        self.fail_writes = set()
        self.calls = []

    async def select(self, collection, filter_dict=None, sort=None, limit=None):
        self.calls.append(("select", collection))
        if collection in self.fail_reads:
            raise TransientIO(f"select on {collection} failed")
        gate = self.select_gates.get(collection)
        if gate is not None:
            await gate.wait()
        return await self.inner.select(collection, filter_dict, sort=sort, limit=limit)

    async def insert(self, collection, data):
        self.calls.append(("insert", collection))
        gate = self.insert_gates.get(collection)
        if gate is not None:
            await gate.wait()
        if collection in self.fail_writes:
            raise WriteFailure(f"insert into {collection} failed")
        return await self.inner.insert(collection, data)

    async def update(self, collection, record_id, fields):
        self.calls.append(("update", collection))
        if collection in self.fail_writes:
            raise WriteFailure(f"update on {collection} failed")
        return await self.inner.update(collection, record_id, fields)

    def count(self, op, collection):
        return sum(1 for c in self.calls if c == (op, collection))


@pytest.fixture
def store():
    client = MongitaClientMemory()
    return MongoRecordStore(client[f"test_{uuid.uuid4().hex[:10]}"])


@pytest.fixture
def gated(store):
    return GatedStore(store)


@pytest.fixture
def progress_store():
    return MemoryProgressStore()


@pytest.fixture
def author():
    return Player(id="author-1", name="Ada")


@pytest.fixture
def player():
    return Player(id="player-1", name="Lin")


TRUTHS = [
    GeoPoint(lat=10.0, lng=20.0),
    GeoPoint(lat=-30.0, lng=40.0),
    GeoPoint(lat=45.0, lng=8.0),
]


async def seed_challenges(store, author: Player, truths: List[GeoPoint] = TRUTHS) -> List[Challenge]:
    created = []
    for n, truth in enumerate(truths):
        challenge = Challenge(
            image_ref=f"img/{n}.jpg",
            location=truth,
            location_name=f"Place {n}",
            author_id=author.id,
            author_name=author.name,
            created_at=1_000 + n,
        )
        created.append(await catalog.create_challenge(store, challenge))
    return created
