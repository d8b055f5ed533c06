import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from kombu.exceptions import OperationalError

from fitchallenge import tasks
from fitchallenge.config import settings
from fitchallenge.main import app

STEPS_CHALLENGE = {
    "challenge_type": "custom",
    "title": "Spring steps",
    "rules": [{"activity_type": "Steps", "metric": "steps", "target_value": 5000, "points": 2}],
}


@pytest_asyncio.fixture
async def client(db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _as(user_id):
    return {"X-User-Id": user_id}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_missing_user_header_is_rejected(client):
    response = await client.get("/me/challenges")
    assert response.status_code == 401
    assert response.json()["detail"] == "User ID is required"


@pytest.mark.asyncio
async def test_create_challenge_and_log_activity(client):
    created = await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))
    assert created.status_code == 201
    body = created.json()
    assert body["participant_count"] == 1
    assert body["creator_id"] == "user-1"
    assert body["challenge_activities"][0]["target_value"] == 5000

    mine = (await client.get("/me/challenges", headers=_as("user-1"))).json()
    assert [c["id"] for c in mine] == [body["id"]]

    options = (await client.get("/me/activity-types", headers=_as("user-1"))).json()
    assert options[0]["activity_type"] == "Steps"
    assert options[0]["metrics"][0]["metric"] == "steps"

    logged = await client.post("/me/activities", json={"activity_type": "Steps", "values": {"steps": 5000}},
                               headers=_as("user-1"))
    assert logged.status_code == 201
    result = logged.json()
    assert result["points_awarded"] == 2
    assert result["failures"] == []
    assert result["activities"][0]["steps"] == 5000


@pytest.mark.asyncio
async def test_participation_limit_returns_conflict(client):
    for title in ("One", "Two"):
        response = await client.post("/challenges", json=dict(STEPS_CHALLENGE, title=title), headers=_as("user-1"))
        assert response.status_code == 201
    third = (await client.post("/challenges", json=dict(STEPS_CHALLENGE, title="Three"), headers=_as("user-2"))).json()

    eligibility = (await client.get("/me/eligibility", headers=_as("user-1"))).json()
    assert eligibility == {"can_join": False, "active_count": 2}

    response = await client.post(f"/challenges/{third['id']}/join", headers=_as("user-1"))
    assert response.status_code == 409
    assert response.json()["detail"] == "You can only participate in 2 active challenges at a time"


@pytest.mark.asyncio
async def test_join_leave_rejoin(client):
    challenge = (await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))).json()
    url = f"/challenges/{challenge['id']}"

    joined = await client.post(f"{url}/join", headers=_as("user-2"))
    assert joined.status_code == 200
    assert joined.json()["status"] == "active"

    again = await client.post(f"{url}/join", headers=_as("user-2"))
    assert again.status_code == 400
    assert again.json()["detail"] == "You have already joined this challenge"

    left = await client.post(f"{url}/leave", headers=_as("user-2"))
    assert left.json()["status"] == "left"

    rejoined = await client.post(f"{url}/rejoin", headers=_as("user-2"))
    assert rejoined.status_code == 200
    assert rejoined.json()["rejoined_at"] is not None


@pytest.mark.asyncio
async def test_invalid_challenge_type_is_a_bad_request(client):
    response = await client.post("/challenges", json=dict(STEPS_CHALLENGE, challenge_type="marathon"),
                                 headers=_as("user-1"))
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Invalid challenge type: marathon")


@pytest.mark.asyncio
async def test_unknown_challenge_is_not_found(client):
    response = await client.get("/challenges/999")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_import_activities(client):
    await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))
    records = [
        {"activity_type": "Steps", "start_time": "2025-03-03T08:00:00Z", "steps": 6000},
        {"activity_type": "Workout", "start_time": "2025-03-03T09:00:00Z", "duration": 45},
    ]
    response = await client.post("/me/activities/import?source=health_connect", json=records, headers=_as("user-1"))
    assert response.status_code == 201
    assert response.json() == {"saved_count": 2, "errors": []}


class _Queued:
    id = "task-1"


class _FakeBackfill:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def delay(self, *args):
        self.calls.append(args)
        if self.error:
            raise self.error
        return _Queued()


@pytest.mark.asyncio
async def test_join_enqueues_backfill(client, monkeypatch):
    backfill = _FakeBackfill()
    monkeypatch.setattr(settings, "backfill_on_join", True)
    monkeypatch.setattr(tasks, "backfill_challenge_points", backfill)
    challenge = (await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))).json()

    response = await client.post(f"/challenges/{challenge['id']}/join", headers=_as("user-2"))

    assert response.status_code == 200
    assert backfill.calls == [("user-2", challenge["id"])]


@pytest.mark.asyncio
async def test_join_succeeds_when_backfill_cannot_be_queued(client, monkeypatch, caplog):
    backfill = _FakeBackfill(OperationalError("Error 111 connecting to localhost:6379. Connection refused."))
    monkeypatch.setattr(settings, "backfill_on_join", True)
    monkeypatch.setattr(tasks, "backfill_challenge_points", backfill)
    challenge = (await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))).json()

    response = await client.post(f"/challenges/{challenge['id']}/join", headers=_as("user-2"))

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert backfill.calls
    assert "Could not queue backfill" in caplog.text

    mine = (await client.get("/me/challenges", headers=_as("user-2"))).json()
    assert [c["id"] for c in mine] == [challenge["id"]]


@pytest.mark.asyncio
async def test_race_standings_endpoint(client):
    race = dict(STEPS_CHALLENGE, challenge_type="race", points_per_checkpoint=2)
    challenge = (await client.post("/challenges", json=race, headers=_as("user-1"))).json()
    await client.post("/me/activities", json={"activity_type": "Steps", "values": {"steps": 5000}},
                      headers=_as("user-1"))

    standings = (await client.get(f"/challenges/{challenge['id']}/race")).json()

    assert standings[0]["user_id"] == "user-1"
    assert standings[0]["total_points"] == 2
    assert standings[0]["map_position"] == 1

    custom = (await client.post("/challenges", json=STEPS_CHALLENGE, headers=_as("user-1"))).json()
    response = await client.get(f"/challenges/{custom['id']}/race")
    assert response.status_code == 400
