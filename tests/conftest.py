import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'blocker' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Must be set before blocker.config is imported anywhere
os.environ.setdefault("BLOCKER_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_blocker.db")

from blocker.database import Base  # noqa: E402
from blocker.models.db import BlockedSkylink, LatestBlockTimestamp  # noqa: E402,F401
from blocker.services.skyd import BlocklistRejectedError, SkydUnreachableError  # noqa: E402
from blocker.services.skylink_store import PendingSkylink, SkylinkStore  # noqa: E402

SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_blocker_store.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    yield
    engine.dispose()
    for name in ("test_blocker_store.db", "test_blocker.db"):
        try:
            os.remove(name)
        except OSError:
            pass


@pytest.fixture()
def session_factory():
    # Fresh tables per test: the store is all about what is (not) in the DB.
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal


@pytest.fixture()
def store(session_factory):
    return SkylinkStore(session_factory)


class FakeSkyd:
    """Blocking authority double. Records every batch; refuses batches holding a failing skylink."""

    def __init__(self, failing=("throwerror",), unreachable: bool = False):
        self.failing = set(failing)
        self.unreachable = unreachable
        self.requests: list[list[str]] = []

    async def block_skylinks(self, skylinks: list[str]) -> None:
        self.requests.append(list(skylinks))
        if self.unreachable:
            raise SkydUnreachableError("connection refused")
        bad = [s for s in skylinks if s in self.failing]
        if bad:
            raise BlocklistRejectedError(f"unable to update blocklist: {bad[0]}", status=400)

    async def is_skyd_up(self) -> bool:
        return not self.unreachable


@pytest.fixture()
def fake_skyd():
    return FakeSkyd()


BASE_TS = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_items(names, start: datetime = BASE_TS, step: timedelta = timedelta(minutes=1)) -> list[PendingSkylink]:
    return [PendingSkylink(skylink=name, timestamp_added=start + step * i) for i, name in enumerate(names)]


def sixteen_with_tenth_failing(start: datetime = BASE_TS) -> list[PendingSkylink]:
    names = [f"skylink_{i}" for i in range(16)]
    names[9] = "throwerror"
    return make_items(names, start)
