import pytest
from datetime import date
from sqlalchemy.exc import OperationalError

from fitchallenge import tasks
from fitchallenge.evaluator import Award, AwardFailure, AwardReport
from fitchallenge.models.activity import Metric
from fitchallenge.models.challenge import ChallengeParticipant, ParticipantStatus
from fitchallenge.recorder import save_user_activity
from fitchallenge.schemas import ActivityInput


def _steps(count):
    return ActivityInput(activity_type="Steps", metric=Metric.STEPS, duration=count)


def test_summarize_reports_partial_results():
    report = AwardReport(
        activity_id=7,
        awards=[Award(challenge_id=1, participant_id=3, rule_id=9, points=2, timeframe="day",
                      period_start=date(2025, 3, 3))],
        failures=[AwardFailure(stage="award", error="boom", challenge_id=2, rule_id=10)],
    )
    summary = tasks.summarize(report)
    assert summary == {
        'status': 'partial',
        'points_awarded': 2,
        'awards': [{'challenge_id': 1, 'rule_id': 9, 'points': 2, 'period_start': '2025-03-03'}],
        'failures': ['boom'],
    }
    assert tasks.summarize(AwardReport())['status'] == 'success'


@pytest.mark.asyncio
async def test_run_evaluation_uses_its_own_session(db, make_challenge):
    challenge = await make_challenge(rules=[{}])
    activity = await save_user_activity(db, _steps(5000), "user-1")

    report = await tasks.run_evaluation(activity.id, "user-1")

    assert report.ok and report.points_awarded == 2
    assert report.awards[0].challenge_id == challenge.id


@pytest.mark.asyncio
async def test_run_backfill_credits_existing_activities(db, make_challenge):
    challenge = await make_challenge(rules=[{}], participants=())
    await save_user_activity(db, _steps(6000), "user-1")
    db.add(ChallengeParticipant(challenge_id=challenge.id, user_id="user-1", status=ParticipantStatus.ACTIVE))
    await db.commit()

    report = await tasks.run_backfill("user-1", challenge.id)

    assert report.points_awarded == 2


def test_evaluate_activity_task_returns_summary(monkeypatch):
    async def fake_evaluation(activity_id, user_id):
        return AwardReport(activity_id=activity_id)

    monkeypatch.setattr(tasks, "run_evaluation", fake_evaluation)

    result = tasks.evaluate_activity.apply(args=(5, "user-1"))

    assert result.successful()
    assert result.get() == {'status': 'success', 'points_awarded': 0, 'awards': [], 'failures': []}


def test_database_errors_are_retried(monkeypatch):
    calls = []

    async def failing_backfill(user_id, challenge_id):
        calls.append(challenge_id)
        raise OperationalError("SELECT 1", {}, Exception("database unavailable"))

    monkeypatch.setattr(tasks, "run_backfill", failing_backfill)

    result = tasks.backfill_challenge_points.apply(args=("user-1", 3))

    assert not result.successful()
    assert calls and calls[0] == 3
