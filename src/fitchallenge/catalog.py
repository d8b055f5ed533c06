# src/fitchallenge/catalog.py

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .config import settings
from .exceptions import ChallengeError, ChallengeLimitError, NotFoundError, ParticipationError
from .metrics import challenge_joins_total
from .models.base import as_utc, utcnow
from .models.challenge import (
    Challenge, ChallengeActivity, ChallengeParticipant, ChallengeStatus, ChallengeType, ParticipantStatus,
)
from .models.profile import Profile
from .race import DEFAULT_POINTS_PER_CHECKPOINT, DEFAULT_TOTAL_CHECKPOINTS, starting_position
from .schemas import (
    ActivityTypeOptions, ChallengeCreate, ChallengeDetail, ChallengeSummary, JoinEligibility, MetricOption,
)
from .utils.logging import setup_logger

logger = setup_logger(__name__, level=settings.log_level)

VALID_CHALLENGE_TYPES = [t.value for t in ChallengeType]


def _require_user(user_id: Optional[str]):
    if not user_id:
        raise ChallengeError("User ID is required")


def _active_counts():
    """Subquery: challenge_id -> number of active participants."""
    return (
        select(
            ChallengeParticipant.challenge_id,
            func.count(ChallengeParticipant.id).label("participant_count"),
        )
        .where(ChallengeParticipant.status == ParticipantStatus.ACTIVE)
        .group_by(ChallengeParticipant.challenge_id)
        .subquery()
    )


async def get_active_challenges_for_user(db: AsyncSession, user_id: str) -> List[ChallengeSummary]:
    """Return all active challenges the user actively participates in, with participant counts.

    Completed and cancelled challenges are archived: they neither earn points
    nor count toward the participation cap.
    """
    _require_user(user_id)
    counts = _active_counts()
    stmt = (
        select(Challenge, func.coalesce(counts.c.participant_count, 0))
        .join(ChallengeParticipant, ChallengeParticipant.challenge_id == Challenge.id)
        .outerjoin(counts, counts.c.challenge_id == Challenge.id)
        .where(
            ChallengeParticipant.user_id == user_id,
            ChallengeParticipant.status == ParticipantStatus.ACTIVE,
            Challenge.status == ChallengeStatus.ACTIVE,
        )
        .order_by(Challenge.id)
    )
    rows = (await db.execute(stmt)).all()
    return [
        ChallengeSummary.model_validate(challenge).model_copy(update={"participant_count": count})
        for challenge, count in rows
    ]


async def can_join_new_challenge(db: AsyncSession, user_id: str) -> JoinEligibility:
    _require_user(user_id)
    active_count = (await db.execute(
        select(func.count(ChallengeParticipant.id))
        .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
        .where(
            ChallengeParticipant.user_id == user_id,
            ChallengeParticipant.status == ParticipantStatus.ACTIVE,
            Challenge.status == ChallengeStatus.ACTIVE,
        )
    )).scalar() or 0
    return JoinEligibility(
        can_join=active_count < settings.max_active_challenges,
        active_count=active_count,
    )


async def ensure_can_join(db: AsyncSession, user_id: str) -> JoinEligibility:
    """Raise ChallengeLimitError when the user is already at the participation cap."""
    eligibility = await can_join_new_challenge(db, user_id)
    if not eligibility.can_join:
        logger.warning(
            f"User {user_id} refused: {eligibility.active_count} active challenges "
            f"(limit {settings.max_active_challenges})"
        )
        challenge_joins_total.labels(outcome='limit_reached').inc()
        raise ChallengeLimitError(settings.max_active_challenges)
    return eligibility


async def get_challenge_activity_types(db: AsyncSession, user_id: str) -> List[ActivityTypeOptions]:
    """Flatten the rules of the user's active challenges into per-activity-type metric options.

    Challenges created before rules were normalized into ``challenge_activities``
    only carry ``rules.allowed_activities``; those are read instead, with the
    metric taken from ``rules.metrics`` and defaulting to ``time``.
    """
    active = await get_active_challenges_for_user(db, user_id)
    if not active:
        return []

    by_id = {c.id: c for c in active}
    rows = (await db.execute(
        select(ChallengeActivity.challenge_id, ChallengeActivity.activity_type, ChallengeActivity.metric)
        .where(ChallengeActivity.challenge_id.in_(list(by_id)))
        .order_by(ChallengeActivity.challenge_id, ChallengeActivity.id)
    )).all()

    options = {}

    def add(activity_type: str, metric: str, challenge: ChallengeSummary):
        entry = options.setdefault(activity_type, ActivityTypeOptions(activity_type=activity_type))
        if not any(m.metric == metric and m.challenge_id == challenge.id for m in entry.metrics):
            entry.metrics.append(MetricOption(
                metric=metric, challenge_id=challenge.id, challenge_title=challenge.title
            ))

    with_rows = set()
    for challenge_id, activity_type, metric in rows:
        with_rows.add(challenge_id)
        add(activity_type.value, metric.value, by_id[challenge_id])

    for challenge in active:
        if challenge.id in with_rows:
            continue
        rules = challenge.rules or {}
        allowed = rules.get("allowed_activities")
        if not isinstance(allowed, list):
            continue
        metrics = rules.get("metrics") or {}
        for name in allowed:
            add(name, metrics.get(name) or "time", challenge)

    return list(options.values())


async def create_challenge(db: AsyncSession, user_id: str, data: ChallengeCreate) -> Challenge:
    """Create a challenge with its rules and enroll the creator as a participant."""
    if data.challenge_type not in VALID_CHALLENGE_TYPES:
        message = (
            f"Invalid challenge type: {data.challenge_type}. "
            f"Must be one of {', '.join(VALID_CHALLENGE_TYPES)}"
        )
        logger.error(message)
        raise ChallengeError(message)
    _require_user(user_id)
    if not data.title or not data.title.strip():
        raise ChallengeError("Challenge name is required")

    start_date = as_utc(data.start_date) if data.start_date else None
    end_date = as_utc(data.end_date) if data.end_date and not data.is_open_ended else None
    if start_date and end_date and end_date < start_date:
        raise ChallengeError("End date must not be before start date")

    await ensure_can_join(db, user_id)

    challenge_type = ChallengeType(data.challenge_type)
    rules = {
        "challenge_mode": data.challenge_type,
        "allowed_activities": [r.activity_type.value for r in data.rules],
        "points_per_activity": {r.activity_type.value: r.points for r in data.rules},
        "metrics": {r.activity_type.value: r.metric.value for r in data.rules},
    }
    if challenge_type == ChallengeType.RACE:
        rules["pointsPerCheckpoint"] = data.points_per_checkpoint or DEFAULT_POINTS_PER_CHECKPOINT
        rules["totalCheckpoints"] = data.total_checkpoints or DEFAULT_TOTAL_CHECKPOINTS

    challenge = Challenge(
        creator_id=user_id,
        challenge_type=challenge_type,
        title=data.title.strip(),
        description=data.description.strip() if data.description else None,
        start_date=start_date,
        end_date=end_date,
        is_open_ended=data.is_open_ended,
        is_private=data.is_private,
        status=ChallengeStatus.ACTIVE,
        rules=rules,
    )
    challenge.challenge_activities = [
        ChallengeActivity(
            activity_type=r.activity_type,
            metric=r.metric,
            target_value=r.target_value,
            points=r.points,
            timeframe=r.timeframe,
        )
        for r in data.rules
    ]
    db.add(challenge)
    await db.flush()
    db.add(ChallengeParticipant(
        challenge_id=challenge.id,
        user_id=user_id,
        status=ParticipantStatus.ACTIVE,
        joined_at=utcnow(),
        map_position=starting_position(challenge_type),
    ))
    await db.commit()
    logger.info(f"Challenge created: {challenge.title} (Type: {data.challenge_type}, id={challenge.id})")
    return challenge


async def get_challenge_by_id(db: AsyncSession, challenge_id: int) -> ChallengeDetail:
    counts = _active_counts()
    row = (await db.execute(
        select(Challenge, func.coalesce(counts.c.participant_count, 0), Profile.nickname)
        .outerjoin(counts, counts.c.challenge_id == Challenge.id)
        .outerjoin(Profile, Profile.id == Challenge.creator_id)
        .options(selectinload(Challenge.challenge_activities))
        .where(Challenge.id == challenge_id)
    )).first()
    if row is None:
        raise NotFoundError(f"Challenge {challenge_id} not found")
    challenge, count, nickname = row
    return ChallengeDetail.model_validate(challenge).model_copy(
        update={"participant_count": count, "creator_nickname": nickname}
    )


async def list_active_challenges(db: AsyncSession, user_id: str) -> List[ChallengeSummary]:
    """Active challenges, newest first. Private ones are only listed for their creator."""
    counts = _active_counts()
    rows = (await db.execute(
        select(Challenge, func.coalesce(counts.c.participant_count, 0))
        .outerjoin(counts, counts.c.challenge_id == Challenge.id)
        .where(
            Challenge.status == ChallengeStatus.ACTIVE,
            (Challenge.is_private == False) | (Challenge.creator_id == user_id),  # noqa: E712
        )
        .order_by(Challenge.created_at.desc(), Challenge.id.desc())
    )).all()
    return [
        ChallengeSummary.model_validate(c).model_copy(update={"participant_count": n})
        for c, n in rows
    ]


async def update_challenge_status(
    db: AsyncSession, user_id: str, challenge_id: int, status: ChallengeStatus
) -> Challenge:
    challenge = await _get_challenge(db, challenge_id)
    if challenge.creator_id != user_id:
        raise ChallengeError("Only the challenge creator can change its status")
    if challenge.status != ChallengeStatus.ACTIVE:
        raise ChallengeError(f"Challenge is already {challenge.status.value}")
    challenge.status = status
    await db.commit()
    logger.info(f"Challenge {challenge_id} status set to {status.value}")
    return challenge


async def _get_challenge(db: AsyncSession, challenge_id: int) -> Challenge:
    challenge = await db.get(Challenge, challenge_id)
    if challenge is None:
        raise NotFoundError(f"Challenge {challenge_id} not found")
    return challenge


async def _get_participant(db: AsyncSession, user_id: str, challenge_id: int) -> Optional[ChallengeParticipant]:
    return (await db.execute(
        select(ChallengeParticipant).where(
            ChallengeParticipant.challenge_id == challenge_id,
            ChallengeParticipant.user_id == user_id,
        )
    )).scalar_one_or_none()


def _is_open(challenge: Challenge, now: datetime) -> bool:
    if challenge.status != ChallengeStatus.ACTIVE:
        return False
    return challenge.end_date is None or challenge.end_date > now


async def join_challenge(db: AsyncSession, user_id: str, challenge_id: int) -> ChallengeParticipant:
    """Join a challenge, or rejoin it if the user left earlier."""
    await ensure_can_join(db, user_id)

    challenge = await _get_challenge(db, challenge_id)
    if not _is_open(challenge, utcnow()):
        raise ChallengeError("This challenge is no longer active")

    participant = await _get_participant(db, user_id, challenge_id)
    if participant is not None and participant.status == ParticipantStatus.ACTIVE:
        challenge_joins_total.labels(outcome='duplicate').inc()
        raise ParticipationError("You have already joined this challenge")

    if participant is not None:
        participant.status = ParticipantStatus.ACTIVE
        participant.left_at = None
        participant.rejoined_at = utcnow()
        outcome = 'rejoined'
    else:
        participant = ChallengeParticipant(
            challenge_id=challenge_id,
            user_id=user_id,
            status=ParticipantStatus.ACTIVE,
            joined_at=utcnow(),
            left_at=None,
            rejoined_at=None,
            last_activity_date=None,
            map_position=starting_position(challenge.challenge_type),
        )
        db.add(participant)
        outcome = 'joined'

    await db.commit()
    challenge_joins_total.labels(outcome=outcome).inc()
    logger.info(f"User {user_id} {outcome} challenge {challenge_id}")
    return participant


async def leave_challenge(db: AsyncSession, user_id: str, challenge_id: int) -> ChallengeParticipant:
    participant = await _get_participant(db, user_id, challenge_id)
    if participant is None or participant.status != ParticipantStatus.ACTIVE:
        raise ParticipationError("You are not an active participant of this challenge")
    participant.status = ParticipantStatus.LEFT
    participant.left_at = utcnow()
    await db.commit()
    logger.info(f"User {user_id} left challenge {challenge_id}")
    return participant


async def can_rejoin_challenge(db: AsyncSession, user_id: str, challenge_id: int) -> bool:
    participant = await _get_participant(db, user_id, challenge_id)
    if participant is None or participant.status != ParticipantStatus.LEFT:
        return False
    challenge = await db.get(Challenge, challenge_id)
    return challenge is not None and _is_open(challenge, utcnow())


async def rejoin_challenge(db: AsyncSession, user_id: str, challenge_id: int) -> ChallengeParticipant:
    if not await can_rejoin_challenge(db, user_id, challenge_id):
        raise ParticipationError("This challenge is no longer active or available to rejoin")
    return await join_challenge(db, user_id, challenge_id)
