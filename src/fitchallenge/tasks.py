# src/fitchallenge/tasks.py

import asyncio
import time

from sqlalchemy.exc import SQLAlchemyError

from .celery_app import celery_app
from .config import settings
from .evaluator import AwardReport, backfill_challenge_points as backfill, update_challenges_with_activity
from .metrics import task_total, task_duration
from .models.database import async_session, engine
from .utils.logging import setup_logger

logger = setup_logger(__name__, level=settings.log_level)


async def run_evaluation(activity_id: int, user_id: str) -> AwardReport:
    async with async_session() as db:
        return await update_challenges_with_activity(db, activity_id, user_id)


async def run_backfill(user_id: str, challenge_id: int) -> AwardReport:
    async with async_session() as db:
        return await backfill(db, user_id, challenge_id)


def _run(coro):
    """Run a coroutine on a fresh event loop; pooled connections must not outlive it."""
    async def _main():
        try:
            return await coro
        finally:
            await engine.dispose()
    return asyncio.run(_main())


def summarize(report: AwardReport) -> dict:
    return {
        'status': 'success' if report.ok else 'partial',
        'points_awarded': report.points_awarded,
        'awards': [
            {'challenge_id': a.challenge_id, 'rule_id': a.rule_id, 'points': a.points,
             'period_start': a.period_start.isoformat()}
            for a in report.awards
        ],
        'failures': [f.error for f in report.failures],
    }


def _execute(task, task_name: str, coro_factory):
    start_time = time.time()
    task_total.labels(task_name=task_name, status='started').inc()
    try:
        report = _run(coro_factory())
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"{task_name} failed: {e}")
        task_total.labels(task_name=task_name, status='error').inc()
        task_duration.labels(task_name=task_name).observe(time.time() - start_time)
        raise task.retry(exc=e, countdown=5)

    task_total.labels(task_name=task_name, status='success' if report.ok else 'partial').inc()
    task_duration.labels(task_name=task_name).observe(time.time() - start_time)
    return summarize(report)


@celery_app.task(name="evaluate_activity", bind=True, max_retries=3)
def evaluate_activity(self, activity_id: int, user_id: str):
    """Award challenge points for an activity stored outside the request cycle."""
    logger.info(f"Evaluating activity {activity_id} for user {user_id}")
    return _execute(self, 'evaluate_activity', lambda: run_evaluation(activity_id, user_id))


@celery_app.task(name="backfill_challenge_points", bind=True, max_retries=3)
def backfill_challenge_points(self, user_id: str, challenge_id: int):
    """Award a newly joined challenge's points for this week's activities."""
    logger.info(f"Backfilling challenge {challenge_id} for user {user_id}")
    return _execute(self, 'backfill_challenge_points', lambda: run_backfill(user_id, challenge_id))
