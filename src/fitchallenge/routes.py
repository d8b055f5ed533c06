# src/fitchallenge/routes.py

from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException  # type: ignore
from kombu.exceptions import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, race, recorder
from .config import settings
from .metrics import points_award_failures_total
from .models.activity import ActivitySource
from .models.database import get_session
from .schemas import (
    ActivityLog, ActivityOut, ActivityTypeOptions, ChallengeCreate, ChallengeDetail, ChallengeStatusUpdate,
    ChallengeSummary, ImportedActivity, JoinEligibility, ParticipantOut, RaceStanding,
)
from .utils.logging import setup_logger

logger = setup_logger(__name__, level=settings.log_level)

router = APIRouter()


async def current_user_id(x_user_id: str = Header(default="")) -> str:
    """Resolve the caller once per request; services receive it explicitly."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User ID is required")
    return x_user_id


def enqueue_backfill(user_id: str, challenge_id: int) -> bool:
    """Queue the join backfill; the join has already committed, so broker errors are only reported."""
    from .tasks import backfill_challenge_points
    try:
        task = backfill_challenge_points.delay(user_id, challenge_id)
    except (OperationalError, OSError) as e:
        points_award_failures_total.labels(stage='backfill').inc()
        logger.error(f"Could not queue backfill for user {user_id} in challenge {challenge_id}: {e}")
        return False
    logger.info(f"Submitted backfill task {task.id} for user {user_id} in challenge {challenge_id}")
    return True


@router.get("/challenges", response_model=List[ChallengeSummary])
async def list_challenges(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)):
    return await catalog.list_active_challenges(db, user_id)


@router.post("/challenges", response_model=ChallengeDetail, status_code=201)
async def create_challenge(
    data: ChallengeCreate, user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    challenge = await catalog.create_challenge(db, user_id, data)
    return await catalog.get_challenge_by_id(db, challenge.id)


@router.get("/challenges/{challenge_id}", response_model=ChallengeDetail)
async def get_challenge(challenge_id: int, db: AsyncSession = Depends(get_session)):
    return await catalog.get_challenge_by_id(db, challenge_id)


@router.patch("/challenges/{challenge_id}/status", response_model=ChallengeSummary)
async def update_status(
    challenge_id: int,
    data: ChallengeStatusUpdate,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_session),
):
    await catalog.update_challenge_status(db, user_id, challenge_id, data.status)
    return await catalog.get_challenge_by_id(db, challenge_id)


@router.post("/challenges/{challenge_id}/join", response_model=ParticipantOut)
async def join_challenge(
    challenge_id: int, user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    participant = await catalog.join_challenge(db, user_id, challenge_id)
    if settings.backfill_on_join:
        enqueue_backfill(user_id, challenge_id)
    return participant


@router.post("/challenges/{challenge_id}/leave", response_model=ParticipantOut)
async def leave_challenge(
    challenge_id: int, user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    return await catalog.leave_challenge(db, user_id, challenge_id)


@router.post("/challenges/{challenge_id}/rejoin", response_model=ParticipantOut)
async def rejoin_challenge(
    challenge_id: int, user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    return await catalog.rejoin_challenge(db, user_id, challenge_id)


@router.get("/me/challenges", response_model=List[ChallengeSummary])
async def my_challenges(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)):
    return await catalog.get_active_challenges_for_user(db, user_id)


@router.get("/me/eligibility", response_model=JoinEligibility)
async def my_eligibility(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)):
    return await catalog.can_join_new_challenge(db, user_id)


@router.get("/me/activity-types", response_model=List[ActivityTypeOptions])
async def my_activity_types(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)):
    return await catalog.get_challenge_activity_types(db, user_id)


@router.post("/me/activities", status_code=201)
async def log_activity(
    log: ActivityLog, user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    result = await recorder.record_activity(db, user_id, log)
    return {
        "activities": [ActivityOut.model_validate(a).model_dump(mode="json") for a in result.activities],
        "points_awarded": result.points_awarded,
        "failures": [asdict(f) for f in result.failures],
    }


@router.post("/me/activities/import", status_code=201)
async def import_activities(
    records: List[ImportedActivity],
    source: ActivitySource = ActivitySource.HEALTHKIT,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_session),
):
    result = await recorder.import_activities(db, user_id, records, source)
    return asdict(result)


@router.get("/challenges/{challenge_id}/race", response_model=List[RaceStanding])
async def race_standings(challenge_id: int, db: AsyncSession = Depends(get_session)):
    return await race.get_race_standings(db, challenge_id)
