# src/fitchallenge/evaluator.py

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Collection, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .catalog import get_active_challenges_for_user
from .config import settings
from .exceptions import ChallengeError, NotFoundError, ParticipationError
from .metrics import activity_evaluation_duration, points_award_failures_total, points_awarded_total
from .models.activity import Activity, ActivityType, Metric, VALUE_COLUMNS
from .models.base import utcnow
from .models.challenge import (
    Challenge, ChallengeActivity, ChallengeParticipant, ChallengeType, ParticipantStatus, PointsLog, Timeframe,
)
from .race import update_race_position
from .utils.logging import setup_logger
from .utils.units import miles_to_km

logger = setup_logger(__name__, level=settings.log_level)


@dataclass(frozen=True)
class MetricCheck:
    dimension: str
    # rule target_value -> canonical storage unit
    to_canonical: Callable[[float], float]

    def threshold(self, target_value: float) -> float:
        return self.to_canonical(target_value)


# Time targets are authored in minutes; mile targets are compared in kilometers.
RULE_CHECKS = {
    Metric.TIME:           MetricCheck("time", float),
    Metric.DISTANCE_KM:    MetricCheck("distance", float),
    Metric.DISTANCE_MILES: MetricCheck("distance", miles_to_km),
    Metric.STEPS:          MetricCheck("steps", float),
    Metric.CALORIES:       MetricCheck("calories", float),
    Metric.COUNT:          MetricCheck("count", float),
}


@dataclass
class Award:
    challenge_id: int
    participant_id: int
    rule_id: int
    points: int
    timeframe: str
    period_start: date
    map_position: Optional[int] = None


@dataclass
class AwardFailure:
    stage: str
    error: str
    challenge_id: Optional[int] = None
    rule_id: Optional[int] = None


@dataclass
class AwardReport:
    activity_id: Optional[int] = None
    awards: List[Award] = field(default_factory=list)
    failures: List[AwardFailure] = field(default_factory=list)

    @property
    def points_awarded(self) -> int:
        return sum(a.points for a in self.awards)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: "AwardReport"):
        self.awards.extend(other.awards)
        self.failures.extend(other.failures)


@dataclass(frozen=True)
class _ActivitySnapshot:
    id: int
    user_id: str
    activity_type: ActivityType
    metric: Metric
    value: float
    created_at: datetime


@dataclass(frozen=True)
class _Rule:
    id: int
    challenge_id: int
    metric: Metric
    target_value: float
    points: int
    timeframe: Timeframe
    challenge_type: ChallengeType = ChallengeType.CUSTOM
    challenge_rules: Optional[dict] = field(default=None, compare=False)


def period_bounds(moment: datetime, timeframe: Timeframe) -> Tuple[datetime, datetime]:
    """[start, end) of the calendar day or Monday-based week containing ``moment``."""
    day = datetime.combine(moment.date(), datetime.min.time())
    if timeframe == Timeframe.WEEK:
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=7)
    return day, day + timedelta(days=1)


async def award_points(db: AsyncSession, participant_id: int, points: int, when: Optional[datetime] = None):
    """Credit points with a single UPDATE so concurrent awards cannot overwrite each other."""
    result = await db.execute(
        update(ChallengeParticipant)
        .where(
            ChallengeParticipant.id == participant_id,
            ChallengeParticipant.status == ParticipantStatus.ACTIVE,
        )
        .values(
            total_points=ChallengeParticipant.total_points + points,
            last_activity_date=when or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ParticipationError(f"Participant {participant_id} is missing or no longer active")


def _record_failure(report: AwardReport, stage: str, error: Exception, rule: Optional[_Rule] = None):
    points_award_failures_total.labels(stage=stage).inc()
    failure = AwardFailure(
        stage=stage,
        error=str(error),
        challenge_id=rule.challenge_id if rule else None,
        rule_id=rule.id if rule else None,
    )
    report.failures.append(failure)
    logger.error(
        f"Points award failed (stage={stage}, activity={report.activity_id}, "
        f"challenge={failure.challenge_id}, rule={failure.rule_id}): {error}"
    )


async def _load_activity(db: AsyncSession, activity_id: int, user_id: str) -> _ActivitySnapshot:
    activity = await db.get(Activity, activity_id)
    if activity is None or activity.user_id != user_id:
        raise NotFoundError(f"Activity {activity_id} not found")
    return _ActivitySnapshot(
        id=activity.id,
        user_id=activity.user_id,
        activity_type=activity.activity_type,
        metric=activity.metric,
        value=activity.value,
        created_at=activity.created_at,
    )


async def _rules_for(db: AsyncSession, challenge_ids: List[int], activity_type: ActivityType) -> List[_Rule]:
    if not challenge_ids:
        return []
    rows = (await db.execute(
        select(
            ChallengeActivity.id,
            ChallengeActivity.challenge_id,
            ChallengeActivity.metric,
            ChallengeActivity.target_value,
            ChallengeActivity.points,
            ChallengeActivity.timeframe,
            Challenge.challenge_type,
            Challenge.rules,
        )
        .join(Challenge, Challenge.id == ChallengeActivity.challenge_id)
        .where(
            ChallengeActivity.challenge_id.in_(challenge_ids),
            ChallengeActivity.activity_type == activity_type,
        )
        .order_by(ChallengeActivity.challenge_id, ChallengeActivity.id)
    )).all()
    return [
        _Rule(
            id=r.id, challenge_id=r.challenge_id, metric=r.metric, target_value=r.target_value,
            points=r.points, timeframe=r.timeframe or Timeframe.DAY,
            challenge_type=r.challenge_type, challenge_rules=r.rules,
        )
        for r in rows
    ]


async def _achieved(db: AsyncSession, activity: _ActivitySnapshot, start: datetime, end: datetime) -> float:
    if not settings.aggregate_timeframe_activities:
        return activity.value
    dimension = activity.metric.dimension
    column = getattr(Activity, VALUE_COLUMNS[dimension])
    total = (await db.execute(
        select(func.coalesce(func.sum(column), 0.0))
        .where(
            Activity.user_id == activity.user_id,
            Activity.activity_type == activity.activity_type,
            Activity.metric.in_(Metric.in_dimension(dimension)),
            Activity.created_at >= start,
            Activity.created_at < end,
        )
    )).scalar()
    return float(total or 0.0)


async def _apply_rule(db: AsyncSession, activity: _ActivitySnapshot, rule: _Rule) -> Optional[Award]:
    check = RULE_CHECKS[rule.metric]
    if check.dimension != activity.metric.dimension:
        return None

    start, end = period_bounds(activity.created_at, rule.timeframe)
    achieved = await _achieved(db, activity, start, end)
    threshold = check.threshold(rule.target_value)
    if achieved < threshold:
        logger.debug(
            f"Threshold not met for rule {rule.id}: {achieved} < {threshold} "
            f"({rule.metric.value}, {rule.timeframe.value})"
        )
        return None

    participant_id = (await db.execute(
        select(ChallengeParticipant.id).where(
            ChallengeParticipant.challenge_id == rule.challenge_id,
            ChallengeParticipant.user_id == activity.user_id,
            ChallengeParticipant.status == ParticipantStatus.ACTIVE,
        )
    )).scalar()
    if participant_id is None:
        raise ParticipationError(
            f"No active participation for user {activity.user_id} in challenge {rule.challenge_id}"
        )

    period_start = start.date()
    already = (await db.execute(
        select(PointsLog.id).where(
            PointsLog.participant_id == participant_id,
            PointsLog.challenge_activity_id == rule.id,
            PointsLog.period_start == period_start,
        )
    )).scalar()
    if already is not None:
        logger.info(f"Points already awarded for rule {rule.id} this {rule.timeframe.value}")
        return None

    db.add(PointsLog(
        participant_id=participant_id,
        challenge_activity_id=rule.id,
        activity_id=activity.id,
        period_start=period_start,
        points=rule.points,
    ))
    try:
        await db.flush()
    except IntegrityError:
        # Another session logged this period first
        await db.rollback()
        logger.info(f"Points for rule {rule.id} were awarded concurrently for {period_start}")
        return None

    await award_points(db, participant_id, rule.points)
    map_position = None
    if rule.challenge_type == ChallengeType.RACE:
        map_position = await update_race_position(db, participant_id, rule.challenge_rules)
    await db.commit()

    points_awarded_total.labels(timeframe=rule.timeframe.value).inc(rule.points)
    logger.info(
        f"Points awarded: challenge={rule.challenge_id} participant={participant_id} "
        f"rule={rule.id} points={rule.points} period={period_start}"
    )
    return Award(
        challenge_id=rule.challenge_id,
        participant_id=participant_id,
        rule_id=rule.id,
        points=rule.points,
        timeframe=rule.timeframe.value,
        period_start=period_start,
        map_position=map_position,
    )


async def update_challenges_with_activity(
    db: AsyncSession,
    activity_id: int,
    user_id: str,
    challenge_ids: Optional[Collection[int]] = None,
) -> AwardReport:
    """Match a stored activity against the rules of the user's active challenges and credit points.

    Each matching rule is settled in its own transaction. A failing rule is
    rolled back, logged, counted and reported; the remaining rules are still
    evaluated and nothing is raised to the caller.
    """
    start_time = time.time()
    report = AwardReport(activity_id=activity_id)

    try:
        activity = await _load_activity(db, activity_id, user_id)
        active = await get_active_challenges_for_user(db, user_id)
        ids = [c.id for c in active if challenge_ids is None or c.id in challenge_ids]
        rules = await _rules_for(db, ids, activity.activity_type)
    except (ChallengeError, SQLAlchemyError) as e:
        await db.rollback()
        _record_failure(report, "resolve", e)
        return report

    logger.debug(
        f"Processing activity {activity_id}: {activity.activity_type.value} "
        f"{activity.metric.value}={activity.value}, {len(rules)} candidate rules"
    )

    for rule in rules:
        try:
            award = await _apply_rule(db, activity, rule)
        except (ChallengeError, SQLAlchemyError) as e:
            await db.rollback()
            _record_failure(report, "award", e, rule)
            continue
        if award is not None:
            report.awards.append(award)

    activity_evaluation_duration.observe(time.time() - start_time)
    return report


async def backfill_challenge_points(
    db: AsyncSession, user_id: str, challenge_id: int, now: Optional[datetime] = None
) -> AwardReport:
    """Award a newly joined challenge's points for activities already logged this week."""
    now = now or utcnow()
    report = AwardReport()
    try:
        challenge = await db.get(Challenge, challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        since, _ = period_bounds(now, Timeframe.WEEK)
        if challenge.start_date and challenge.start_date > since:
            since = challenge.start_date
        activity_ids = (await db.execute(
            select(Activity.id)
            .where(
                Activity.user_id == user_id,
                Activity.created_at >= since,
                Activity.created_at <= now,
            )
            .order_by(Activity.created_at, Activity.id)
        )).scalars().all()
    except (ChallengeError, SQLAlchemyError) as e:
        await db.rollback()
        _record_failure(report, "backfill", e)
        return report

    for activity_id in activity_ids:
        report.merge(await update_challenges_with_activity(
            db, activity_id, user_id, challenge_ids={challenge_id}
        ))

    logger.info(
        f"Backfill for user {user_id} in challenge {challenge_id}: {len(activity_ids)} activities, "
        f"{report.points_awarded} points, {len(report.failures)} failures"
    )
    return report
