import os
import tempfile
import uuid
from datetime import datetime

# Must be set before fitchallenge.config is imported
_DB_PATH = os.path.join(tempfile.gettempdir(), f"fitchallenge-test-{uuid.uuid4().hex}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["BACKFILL_ON_JOIN"] = "false"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
import pytest_asyncio

from fitchallenge.models.base import Base
from fitchallenge.models.database import async_session, engine
from fitchallenge.models.activity import ActivityType, Metric
from fitchallenge.models.challenge import (
    Challenge, ChallengeActivity, ChallengeParticipant, ChallengeStatus, ChallengeType, ParticipantStatus, Timeframe,
)


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with async_session() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def make_challenge(db):
    """Insert a challenge with the given rule rows and enroll participants."""
    async def _make(rules=(), participants=("user-1",), title="Test Challenge",
                    legacy_rules=None, start_date=None, end_date=None,
                    status=ChallengeStatus.ACTIVE, creator_id="creator",
                    challenge_type=ChallengeType.CUSTOM):
        challenge = Challenge(
            title=title,
            challenge_type=challenge_type,
            creator_id=creator_id,
            start_date=start_date,
            end_date=end_date,
            status=status,
            rules=legacy_rules,
        )
        challenge.challenge_activities = [
            ChallengeActivity(
                activity_type=r.get("activity_type", ActivityType.STEPS),
                metric=r.get("metric", Metric.STEPS),
                target_value=r.get("target_value", 5000),
                points=r.get("points", 2),
                timeframe=r.get("timeframe", Timeframe.DAY),
            )
            for r in rules
        ]
        db.add(challenge)
        await db.flush()
        for user_id in participants:
            db.add(ChallengeParticipant(
                challenge_id=challenge.id,
                user_id=user_id,
                status=ParticipantStatus.ACTIVE,
                map_position=0 if challenge_type == ChallengeType.RACE else None,
            ))
        await db.commit()
        return challenge
    return _make


@pytest.fixture
def monday_noon():
    return datetime(2025, 3, 3, 12, 0)
