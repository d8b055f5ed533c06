# src/fitchallenge/recorder.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .evaluator import AwardReport, update_challenges_with_activity
from .exceptions import ChallengeError
from .metrics import activities_recorded_total
from .models.activity import Activity, ActivitySource, ActivityType, GLOBAL_ACTIVITY_TYPES, Metric, VALUE_COLUMNS
from .models.base import as_utc, utcnow
from .schemas import ActivityInput, ActivityLog, ImportedActivity
from .utils.logging import setup_logger
from .utils.units import hours_to_minutes, miles_to_km

logger = setup_logger(__name__, level=settings.log_level)

# metric -> (input field carrying the value, conversion to canonical storage unit)
INPUT_FIELDS = {
    Metric.TIME:           ("duration", hours_to_minutes),
    Metric.DISTANCE_KM:    ("distance", float),
    Metric.DISTANCE_MILES: ("distance", miles_to_km),
    Metric.CALORIES:       ("calories", float),
    Metric.STEPS:          ("duration", float),
    Metric.COUNT:          ("duration", float),
}


@dataclass
class RecordResult:
    activities: List[Activity] = field(default_factory=list)
    reports: List[AwardReport] = field(default_factory=list)

    @property
    def points_awarded(self) -> int:
        return sum(r.points_awarded for r in self.reports)

    @property
    def failures(self) -> list:
        return [f for r in self.reports for f in r.failures]


@dataclass
class ImportResult:
    saved_count: int = 0
    errors: List[str] = field(default_factory=list)


def canonical_activity_type(name: str) -> Tuple[ActivityType, Optional[str]]:
    """Map a user-entered name onto the fixed vocabulary.

    Anything outside it becomes CUSTOM, with the original name kept for the notes field.
    """
    if name in GLOBAL_ACTIVITY_TYPES:
        return GLOBAL_ACTIVITY_TYPES[name], None
    return ActivityType.CUSTOM, name


async def _store_activity(
    db: AsyncSession,
    user_id: str,
    activity_type: str,
    metric: Metric,
    value: float,
    source: ActivitySource,
    created_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Activity:
    if not user_id:
        raise ChallengeError("User ID is required")
    canonical, custom_name = canonical_activity_type(activity_type)
    if custom_name is not None:
        custom_note = f"CustomName: {custom_name}"
        notes = f"{custom_note}; {notes}" if notes else custom_note

    activity = Activity(
        user_id=user_id,
        activity_type=canonical,
        metric=metric,
        source=source,
        notes=notes,
        created_at=as_utc(created_at) if created_at else utcnow(),
        **{column: None for column in VALUE_COLUMNS.values()},
    )
    setattr(activity, VALUE_COLUMNS[metric.dimension], value)

    db.add(activity)
    await db.commit()
    activities_recorded_total.labels(metric=metric.value).inc()
    logger.info(
        f"Saved activity {activity.id} for user {user_id}: "
        f"{canonical.value} {metric.value}={value}"
    )
    return activity


async def save_user_activity(db: AsyncSession, data: ActivityInput, user_id: str) -> Activity:
    """Insert one row into ``activities`` for a single metric measurement."""
    field_name, to_canonical = INPUT_FIELDS[data.metric]
    value = to_canonical(getattr(data, field_name))
    return await _store_activity(
        db, user_id, data.activity_type, data.metric, value, data.source, data.created_at
    )


def inputs_for_log(log: ActivityLog) -> List[ActivityInput]:
    """Split a multi-metric log into one ActivityInput per metric."""
    inputs = []
    for metric, value in log.values.items():
        field_name, _ = INPUT_FIELDS[metric]
        inputs.append(ActivityInput(
            activity_type=log.activity_type,
            metric=metric,
            created_at=log.created_at,
            **{field_name: value},
        ))
    return inputs


async def record_activity(db: AsyncSession, user_id: str, log: ActivityLog) -> RecordResult:
    """Persist every metric of a log, then evaluate each stored row against challenge rules.

    Storage errors propagate to the caller. Evaluation never raises; its
    failures are returned on the result.
    """
    result = RecordResult()
    for entry in inputs_for_log(log):
        activity = await save_user_activity(db, entry, user_id)
        result.reports.append(await update_challenges_with_activity(db, activity.id, user_id))
        # A rolled back rule expires every loaded instance
        await db.refresh(activity)
        result.activities.append(activity)
    return result


def _imported_measurement(record: ImportedActivity) -> Tuple[str, Metric, float]:
    if record.distance:
        return record.activity_type, Metric.DISTANCE_KM, record.distance
    if record.steps:
        return record.activity_type, Metric.STEPS, record.steps
    if record.sleep_minutes:
        return ActivityType.SLEEP.value, Metric.TIME, record.sleep_minutes
    if record.calories:
        return record.activity_type, Metric.CALORIES, record.calories
    return record.activity_type, Metric.TIME, record.duration


async def import_activities(
    db: AsyncSession,
    user_id: str,
    records: Iterable[ImportedActivity],
    source: ActivitySource,
) -> ImportResult:
    """Store activities fetched from an external source and evaluate each one."""
    result = ImportResult()
    for record in records:
        activity_type, metric, value = _imported_measurement(record)
        try:
            activity = await _store_activity(
                db, user_id, activity_type, metric, value, source,
                created_at=record.start_time, notes=f"Imported from {source.value}",
            )
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Error saving imported activity for user {user_id}: {e}")
            result.errors.append(str(e))
            continue
        result.saved_count += 1

        report = await update_challenges_with_activity(db, activity.id, user_id)
        result.errors.extend(f.error for f in report.failures)
    return result
