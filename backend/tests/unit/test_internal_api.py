from datetime import datetime, timedelta, timezone

import pytest

MID = "11111111-2222-3333-4444-555555555555"
ADMIN_KEY = "test-admin-key"
HEADERS = {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def app_with_deps(monkeypatch, job_deps):
    from main import app

    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(app.state, "job_deps", job_deps, raising=False)
    yield app
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_internal_routes_require_admin_key(client, app_with_deps):
    missing = await client.get("/api/v1/internal/jobs/health")
    wrong = await client.get("/api/v1/internal/jobs/health", headers={"X-Admin-Key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid admin key"


@pytest.mark.asyncio
async def test_admin_key_not_configured(client, monkeypatch):
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    resp = await client.get("/api/v1/internal/jobs/health", headers=HEADERS)
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Admin key not configured"


@pytest.mark.asyncio
async def test_enqueue_message_job(client, app_with_deps, memory_queue):
    resp = await client.post(
        "/api/v1/internal/jobs/message",
        headers=HEADERS,
        json={"messageId": "msg-1", "conversationId": "conv-review", "userId": "editor-1"},
    )

    assert resp.status_code == 202
    queued = memory_queue.get(resp.json()["job_id"])
    assert queued.kind == "bot-processing"
    assert queued.payload["messageId"] == "msg-1"


@pytest.mark.asyncio
async def test_enqueue_message_job_rejects_bad_body(client, app_with_deps, memory_queue):
    resp = await client.post("/api/v1/internal/jobs/message", headers=HEADERS, json={"messageId": "msg-1"})
    assert resp.status_code == 422
    assert memory_queue.jobs() == []


@pytest.mark.asyncio
async def test_lifecycle_event_fans_out_and_starts_pipeline(
    client, app_with_deps, seeded_db, memory_queue, make_plugin, install_bot
):
    async def on_submitted(ctx, payload):
        return None

    install_bot(make_plugin("intake-bot", events={"manuscript.submitted": on_submitted}))
    seeded_db.seed(
        "journal_settings",
        {"id": "j1", "settings": {"pipelines": {"on-submission": [{"bot": "intake-bot", "command": "check"}]}}},
    )

    resp = await client.post(
        "/api/v1/internal/events",
        headers=HEADERS,
        json={"eventName": "manuscript.submitted", "manuscriptId": MID, "payload": {"source": "web"}},
    )

    body = resp.json()
    assert resp.status_code == 202
    assert len(body["event_jobs"]) == 1
    assert body["pipeline_job"]
    assert [j.kind for j in memory_queue.jobs()] == ["bot-event-processing", "pipeline-step"]


@pytest.mark.asyncio
async def test_unknown_event_name_is_rejected(client, app_with_deps):
    resp = await client.post(
        "/api/v1/internal/events",
        headers=HEADERS,
        json={"eventName": "manuscript.exploded", "manuscriptId": MID},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_start_pipeline_without_config_is_404(client, app_with_deps):
    resp = await client.post("/api/v1/internal/pipelines/on-submission", headers=HEADERS, json={"manuscriptId": MID})
    assert resp.status_code == 404
    assert "on-submission" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_start_pipeline_enqueues_first_step(client, app_with_deps, seeded_db, memory_queue):
    seeded_db.seed(
        "journal_settings",
        {"id": "j1", "settings": {"pipelines": {"nightly": [{"bot": "a", "command": "x"}, {"bot": "b", "command": "y"}]}}},
    )

    resp = await client.post("/api/v1/internal/pipelines/nightly", headers=HEADERS, json={"manuscriptId": MID})

    assert resp.status_code == 202
    queued = memory_queue.get(resp.json()["job_id"])
    assert queued.payload["stepIndex"] == 0
    assert len(queued.payload["steps"]) == 2


@pytest.mark.asyncio
async def test_jobs_health(client, app_with_deps, memory_queue):
    await client.post(
        "/api/v1/internal/jobs/message",
        headers=HEADERS,
        json={"messageId": "m", "conversationId": "c", "userId": "u"},
    )

    resp = await client.get("/api/v1/internal/jobs/health", headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["jobs"] == {"pending": 1, "processing": 0, "completed": 0, "dead": 0}


@pytest.mark.asyncio
async def test_engine_not_initialised_is_503(client, app_with_deps, monkeypatch):
    monkeypatch.setattr(app_with_deps.state, "job_deps", None, raising=False)
    resp = await client.get("/api/v1/internal/jobs/health", headers=HEADERS)
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_review_reminder_cron(client, app_with_deps, seeded_db, email_service):
    soon = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()
    later = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()
    seeded_db.seed(
        "user_profiles",
        {"id": "rev-1", "email": "rev1@example.com", "full_name": "Robin Reviewer"},
    )
    seeded_db.seed(
        "review_assignments",
        {"id": "ra-1", "manuscript_id": MID, "reviewer_id": "rev-1", "status": "ACCEPTED", "due_date": soon, "last_reminded_at": None},
        {"id": "ra-2", "manuscript_id": MID, "reviewer_id": "rev-1", "status": "ACCEPTED", "due_date": later, "last_reminded_at": None},
        {"id": "ra-3", "manuscript_id": MID, "reviewer_id": "ghost", "status": "IN_PROGRESS", "due_date": soon, "last_reminded_at": None},
    )

    first = await client.post("/api/v1/internal/cron/review-reminders", headers=HEADERS)
    second = await client.post("/api/v1/internal/cron/review-reminders", headers=HEADERS)

    assert first.json() == {"success": True, "processed_count": 2, "emails_sent": 1}
    assert [s["context"]["manuscript_title"] for s in email_service.sent] == ["Graph Methods for Peer Review"]
    assert seeded_db.rows("review_assignments", id="ra-1")[0]["last_reminded_by"] == "system"
    # 已催办的任务不会重复发送
    assert second.json()["emails_sent"] == 0


def test_reminder_service_comes_from_engine_dependencies(job_deps):
    from botflow.api.v1.internal import get_reminder_service

    assert get_reminder_service(job_deps) is job_deps.reminders
