# src/fitchallenge/race.py

from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .exceptions import ChallengeError, NotFoundError
from .models.challenge import Challenge, ChallengeParticipant, ChallengeType
from .models.profile import Profile
from .schemas import RaceStanding
from .utils.logging import setup_logger

logger = setup_logger(__name__, level=settings.log_level)

DEFAULT_POINTS_PER_CHECKPOINT = 10
DEFAULT_TOTAL_CHECKPOINTS = 100


def starting_position(challenge_type: ChallengeType) -> Optional[int]:
    """Race participants start on checkpoint 0; other modes have no track."""
    return 0 if challenge_type == ChallengeType.RACE else None


def checkpoint_settings(rules: Optional[dict]) -> Tuple[int, int]:
    rules = rules or {}
    return (
        rules.get("pointsPerCheckpoint") or DEFAULT_POINTS_PER_CHECKPOINT,
        rules.get("totalCheckpoints") or DEFAULT_TOTAL_CHECKPOINTS,
    )


def calculate_map_position(
    total_points: int,
    points_per_checkpoint: int,
    total_checkpoints: int = DEFAULT_TOTAL_CHECKPOINTS,
) -> int:
    """0-indexed checkpoint reached with ``total_points``, never past the last one."""
    if not total_points or not points_per_checkpoint:
        return 0
    return min(int(total_points // points_per_checkpoint), total_checkpoints - 1)


async def update_race_position(db: AsyncSession, participant_id: int, rules: Optional[dict]) -> int:
    """Move a participant to the checkpoint matching their current points.

    Runs inside the caller's transaction, after the points increment.
    """
    total_points = (await db.execute(
        select(ChallengeParticipant.total_points).where(ChallengeParticipant.id == participant_id)
    )).scalar() or 0
    position = calculate_map_position(total_points, *checkpoint_settings(rules))
    await db.execute(
        update(ChallengeParticipant)
        .where(ChallengeParticipant.id == participant_id)
        .values(map_position=position)
        .execution_options(synchronize_session=False)
    )
    logger.debug(f"Participant {participant_id} at checkpoint {position} with {total_points} points")
    return position


async def get_race_standings(db: AsyncSession, challenge_id: int) -> List[RaceStanding]:
    challenge = await db.get(Challenge, challenge_id)
    if challenge is None:
        raise NotFoundError(f"Challenge {challenge_id} not found")
    if challenge.challenge_type != ChallengeType.RACE:
        raise ChallengeError(f"Challenge {challenge_id} is not a race")

    rows = (await db.execute(
        select(ChallengeParticipant, Profile.nickname, Profile.avatar_url)
        .outerjoin(Profile, Profile.id == ChallengeParticipant.user_id)
        .where(ChallengeParticipant.challenge_id == challenge_id)
        .order_by(ChallengeParticipant.total_points.desc(), ChallengeParticipant.id)
    )).all()
    return [
        RaceStanding(
            participant_id=p.id,
            user_id=p.user_id,
            status=p.status.value,
            total_points=p.total_points,
            map_position=int(p.map_position or 0),
            nickname=nickname,
            avatar_url=avatar_url,
        )
        for p, nickname, avatar_url in rows
    ]
