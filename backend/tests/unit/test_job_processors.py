import asyncio

import pytest
from pydantic import BaseModel

from botflow.core.config import BotRuntimeConfig
from botflow.core.errors import NotFoundError
from botflow.jobs.event_processor import process_event_job
from botflow.jobs.message_processor import FAILURE_NOTICE, process_message_job
from botflow.jobs.pipeline_processor import process_pipeline_step
from botflow.jobs.worker import WorkerPool
from botflow.models.bot import BotCommand, CommandParameter
from botflow.models.jobs import EventTriggerJob, JobStatus, MessageTriggerJob, PipelineStep, PipelineStepJob
from botflow.services.bot_runtime import BotExecutor

MID = "11111111-2222-3333-4444-555555555555"


def _seed_message(db, content: str, message_id: str = "msg-1") -> None:
    db.seed(
        "messages",
        {"id": message_id, "conversation_id": "conv-review", "author_id": "editor-1", "content": content},
    )


def _pool(job_deps, worker_config) -> WorkerPool:
    return WorkerPool.from_dependencies(job_deps, worker_config)


def _seed_pipeline(db, key: str, steps: list[dict]) -> None:
    db.seed("journal_settings", {"id": "j1", "name": "Test Journal", "settings": {"pipelines": {key: steps}}})


def _bot_messages(db, bot_user: str) -> list[dict]:
    return [m for m in db.tables.get("messages", []) if m.get("author_id") == bot_user]


# === 消息触发 ===


@pytest.mark.asyncio
async def test_message_job_runs_each_mention(job_deps, seeded_db, make_plugin, install_bot):
    seen = []

    async def say(params, ctx):
        seen.append((params, ctx.triggered_by.user_role, ctx.manuscript["status"]))
        return {"messages": [{"content": f"echo: {params['text']}"}]}

    echo_user = install_bot(
        make_plugin(
            "echo-bot",
            {"say": BotCommand(name="say", execute=say, parameters=(CommandParameter(name="text", required=True),), permissions=("read_manuscript",))},
        )
    )
    _seed_message(seeded_db, "@echo-bot say text=hello and @someone else, @ghost-bot run")

    result = await process_message_job(
        MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"), job_deps
    )

    assert result == {"message_id": "msg-1", "responses": 1}
    assert seen == [({"text": "hello"}, "EDITOR", "UNDER_REVIEW")]
    replies = _bot_messages(seeded_db, echo_user)
    assert [(m["content"], m["parent_id"], m["conversation_id"]) for m in replies] == [
        ("echo: hello", "msg-1", "conv-review")
    ]


@pytest.mark.asyncio
async def test_message_job_applies_actions_with_user_context(job_deps, seeded_db, make_plugin, install_bot):
    async def accept(params, ctx):
        return {"actions": [{"type": "UPDATE_MANUSCRIPT_STATUS", "data": {"status": "ACCEPTED", "reason": "ok"}}]}

    install_bot(make_plugin("editorial-bot", {"accept": accept}))
    _seed_message(seeded_db, "@editorial-bot accept")

    await process_message_job(
        MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"), job_deps
    )

    assert seeded_db.rows("manuscripts", id=MID)[0]["status"] == "ACCEPTED"
    log = seeded_db.rows("status_transition_logs", manuscript_id=MID)[0]
    assert log["changed_by"] == "editor-1"


@pytest.mark.asyncio
async def test_bot_errors_post_warning_reply(job_deps, seeded_db, make_plugin, install_bot):
    async def lint(params, ctx):
        return {"messages": [{"content": "partial result"}], "errors": ["could not read figure 2"]}

    bot_user = install_bot(make_plugin("lint-bot", {"lint": lint}))
    _seed_message(seeded_db, "@lint-bot lint")

    await process_message_job(
        MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"), job_deps
    )

    contents = [m["content"] for m in _bot_messages(seeded_db, bot_user)]
    assert contents[0] == "partial result"
    assert contents[1].startswith("⚠️ **Bot Processing Warning**")
    assert "lint-bot" in contents[1]


@pytest.mark.asyncio
async def test_missing_required_param_replies_with_usage(job_deps, seeded_db, make_plugin, install_bot):
    calls = []

    async def status(params, ctx):
        calls.append(params)

    bot_user = install_bot(
        make_plugin(
            "editorial-bot",
            {"status": BotCommand(name="status", execute=status, parameters=(CommandParameter(name="status", required=True),))},
        )
    )
    _seed_message(seeded_db, "@editorial-bot status")

    await process_message_job(
        MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"), job_deps
    )

    assert calls == []
    contents = [m["content"] for m in _bot_messages(seeded_db, bot_user)]
    assert "Invalid Parameters" in contents[0]
    assert "Missing required parameter: status" in contents[0]


@pytest.mark.asyncio
async def test_disabled_bot_mention_is_ignored(job_deps, seeded_db, make_plugin, install_bot):
    calls = []

    async def run(params, ctx):
        calls.append(params)

    install_bot(make_plugin("quiet-bot", {"run": run}), enabled=False)
    _seed_message(seeded_db, "@quiet-bot run")

    result = await process_message_job(
        MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"), job_deps
    )

    assert result["responses"] == 0
    assert calls == []


@pytest.mark.asyncio
async def test_missing_message_posts_failure_notice_and_raises(job_deps, seeded_db, make_plugin, install_bot):
    system_user = install_bot(make_plugin("system"))

    with pytest.raises(NotFoundError):
        await process_message_job(
            MessageTriggerJob(message_id="gone", conversation_id="conv-review", user_id="editor-1"), job_deps
        )

    notices = _bot_messages(seeded_db, system_user)
    assert [(m["content"], m["parent_id"]) for m in notices] == [(FAILURE_NOTICE, "gone")]


@pytest.mark.asyncio
async def test_unknown_user_fails_job(job_deps, seeded_db):
    _seed_message(seeded_db, "@echo-bot say")
    with pytest.raises(NotFoundError, match="User nobody"):
        await process_message_job(
            MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="nobody"), job_deps
        )


# === 事件触发 ===


@pytest.mark.asyncio
async def test_event_job_runs_as_system_in_review_conversation(job_deps, seeded_db, make_plugin, install_bot):
    seen = []

    async def on_submitted(ctx, payload):
        seen.append((ctx.triggered_by.user_id, ctx.triggered_by.user_role, ctx.conversation_id, payload))
        return {
            "messages": [{"content": "Submission received"}],
            "actions": [{"type": "UPDATE_WORKFLOW_PHASE", "data": {"phase": "DELIBERATION"}}],
        }

    bot_user = install_bot(make_plugin("intake-bot", events={"manuscript.submitted": on_submitted}))

    result = await process_event_job(
        EventTriggerJob(event_name="manuscript.submitted", bot_id="intake-bot", manuscript_id=MID, payload={"source": "web"}),
        job_deps,
    )

    assert result["dropped"] is False
    assert seen == [("system", "SYSTEM", "conv-review", {"source": "web"})]
    assert [m["conversation_id"] for m in _bot_messages(seeded_db, bot_user)] == ["conv-review"]
    release = seeded_db.rows("workflow_releases", manuscript_id=MID)[0]
    assert release["released_by"] == "system"


@pytest.mark.asyncio
async def test_event_for_disabled_bot_is_dropped(job_deps, make_plugin, install_bot):
    calls = []

    async def handler(ctx, payload):
        calls.append(payload)

    install_bot(make_plugin("intake-bot", events={"manuscript.submitted": handler}), enabled=False)

    result = await process_event_job(
        EventTriggerJob(event_name="manuscript.submitted", bot_id="intake-bot", manuscript_id=MID), job_deps
    )
    unknown = await process_event_job(
        EventTriggerJob(event_name="manuscript.submitted", bot_id="ghost-bot", manuscript_id=MID), job_deps
    )

    assert result["dropped"] is True
    assert unknown["dropped"] is True
    assert calls == []


@pytest.mark.asyncio
async def test_event_without_review_conversation_skips_messages(job_deps, seeded_db, make_plugin, install_bot):
    seeded_db.tables["conversations"] = [c for c in seeded_db.tables["conversations"] if c["type"] != "REVIEW"]

    async def handler(ctx, payload):
        return {"messages": [{"content": "nowhere to go"}]}

    bot_user = install_bot(make_plugin("intake-bot", events={"file.uploaded": handler}))

    result = await process_event_job(
        EventTriggerJob(event_name="file.uploaded", bot_id="intake-bot", manuscript_id=MID), job_deps
    )

    assert result["dropped"] is False
    assert _bot_messages(seeded_db, bot_user) == []


# === 流水线 ===


def _step_bot(make_plugin, order: list, *, fail_on: str | None = None):
    def command(name):
        async def run(params, ctx):
            order.append((name, params, (ctx.manuscript or {}).get("status")))
            if name == fail_on:
                return {"messages": [{"content": f"{name} partially done"}], "errors": [f"{name} failed"]}
            out = {"messages": [{"content": f"{name} done"}]}
            if name == "one":
                out["actions"] = [{"type": "UPDATE_MANUSCRIPT_STATUS", "data": {"status": "ACCEPTED"}}]
            return out

        return BotCommand(
            name=name,
            execute=run,
            parameters=(CommandParameter(name="level", default="basic"),),
            permissions=("read_manuscript",),
        )

    return make_plugin("step-bot", {n: command(n) for n in ("one", "two", "three")})


_STEPS = [
    {"bot": "step-bot", "command": "one"},
    {"bot": "step-bot", "command": "two", "parameters": {"level": "deep"}},
    {"bot": "step-bot", "command": "three"},
]


@pytest.mark.asyncio
async def test_pipeline_runs_steps_in_order(job_deps, seeded_db, memory_queue, worker_config, make_plugin, install_bot):
    order: list = []
    bot_user = install_bot(_step_bot(make_plugin, order))
    _seed_pipeline(seeded_db, "on-submission", _STEPS)

    dispatched = job_deps.pipelines.dispatch_lifecycle_event("manuscript.submitted", MID)
    handled = await _pool(job_deps, worker_config).run_once()

    assert dispatched["pipeline_job"]
    assert handled == 3
    assert [o[0] for o in order] == ["one", "two", "three"]
    assert order[0][1] == {"level": "basic"}
    assert order[1][1] == {"level": "deep"}
    # 第 1 步的 action 在第 2 步开始前已经落地
    assert order[1][2] == "ACCEPTED"
    steps = memory_queue.jobs(kind="pipeline-step")
    assert [j.payload["stepIndex"] for j in steps] == [0, 1, 2]
    assert all(j.status == JobStatus.COMPLETED for j in steps)
    assert [m["content"] for m in _bot_messages(seeded_db, bot_user)] == ["one done", "two done", "three done"]


@pytest.mark.asyncio
async def test_pipeline_halts_on_step_errors(job_deps, seeded_db, memory_queue, worker_config, make_plugin, install_bot):
    order: list = []
    bot_user = install_bot(_step_bot(make_plugin, order, fail_on="two"))
    _seed_pipeline(seeded_db, "on-submission", _STEPS)

    job_deps.pipelines.dispatch_lifecycle_event("manuscript.submitted", MID)
    await _pool(job_deps, worker_config).run_once()

    assert [o[0] for o in order] == ["one", "two"]
    steps = memory_queue.jobs(kind="pipeline-step")
    assert [j.payload["stepIndex"] for j in steps] == [0, 1]
    # 出错步骤的消息照常写入
    assert [m["content"] for m in _bot_messages(seeded_db, bot_user)] == ["one done", "two partially done"]


@pytest.mark.asyncio
async def test_pipeline_halts_when_step_bot_unavailable(job_deps, seeded_db, memory_queue, make_plugin, install_bot):
    order: list = []
    install_bot(_step_bot(make_plugin, order))
    job = PipelineStepJob(
        manuscript_id=MID,
        steps=[PipelineStep(bot="ghost-bot", command="one"), PipelineStep(bot="step-bot", command="two")],
    )

    outcome = await process_pipeline_step(job, job_deps)

    assert outcome.halted is True
    assert outcome.executed is False
    assert order == []
    assert memory_queue.jobs(kind="pipeline-step") == []


@pytest.mark.asyncio
async def test_pipeline_cursor_past_end_is_noop(job_deps):
    job = PipelineStepJob(manuscript_id=MID, steps=[PipelineStep(bot="a", command="b")], step_index=3)
    outcome = await process_pipeline_step(job, job_deps)
    assert outcome.halted is True and outcome.executed is False


def test_lifecycle_event_without_pipeline_only_fans_out(job_deps, seeded_db, make_plugin, install_bot):
    async def handler(ctx, payload):
        return None

    install_bot(make_plugin("intake-bot", events={"manuscript.submitted": handler}))
    install_bot(make_plugin("other-bot", events={"file.uploaded": handler}))
    seeded_db.seed("journal_settings", {"id": "j1", "settings": {"pipelines": "not-a-mapping"}})

    result = job_deps.pipelines.dispatch_lifecycle_event("manuscript.submitted", MID, {"a": 1})

    assert len(result["event_jobs"]) == 1
    assert result["pipeline_job"] is None
    queued = job_deps.queue.get(result["event_jobs"][0])
    assert queued.payload == {"eventName": "manuscript.submitted", "botId": "intake-bot", "manuscriptId": MID, "payload": {"a": 1}}


# === worker 池 ===


class _MysteryJob(BaseModel):
    kind: str = "mystery"
    value: int = 1


class _BrokenMessageJob(BaseModel):
    kind: str = "bot-processing"


@pytest.mark.asyncio
async def test_worker_dead_letters_unknown_kind_and_bad_payload(job_deps, memory_queue, worker_config):
    mystery = memory_queue.enqueue(_MysteryJob())
    broken = memory_queue.enqueue(_BrokenMessageJob())

    await _pool(job_deps, worker_config).run_once()

    assert memory_queue.get(mystery).status == JobStatus.DEAD
    assert memory_queue.get(mystery).attempts == 1
    assert memory_queue.get(broken).status == JobStatus.DEAD
    assert "Invalid payload" in memory_queue.get(broken).last_error


@pytest.mark.asyncio
async def test_worker_retries_failed_job_until_dead(job_deps, memory_queue, worker_config):
    job_id = memory_queue.enqueue(MessageTriggerJob(message_id="gone", conversation_id="conv-review", user_id="editor-1"))

    handled = await _pool(job_deps, worker_config).run_once()

    queued = memory_queue.get(job_id)
    assert handled == 3
    assert queued.status == JobStatus.DEAD
    assert queued.attempts == 3
    assert "Message gone not found" in queued.last_error


@pytest.mark.asyncio
async def test_bot_timeout_fails_job_for_retry(job_deps, seeded_db, memory_queue, worker_config, make_plugin, install_bot):
    async def slow(params, ctx):
        await asyncio.sleep(5)

    install_bot(make_plugin("slow-bot", {"think": slow}))
    _seed_message(seeded_db, "@slow-bot think")
    job_deps.executor = BotExecutor(
        BotRuntimeConfig(execution_timeout_ms=20, service_token_secret="test-bot-secret", service_token_ttl_sec=3600)
    )
    job_id = memory_queue.enqueue(MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"))

    pool = _pool(job_deps, worker_config)
    claimed = memory_queue.claim("t")
    ok = await pool.process(claimed)

    assert ok is False
    queued = memory_queue.get(job_id)
    assert queued.status == JobStatus.PENDING
    assert "timed out" in queued.last_error


@pytest.mark.asyncio
async def test_worker_start_stop_drains_queue(job_deps, seeded_db, memory_queue, worker_config, make_plugin, install_bot):
    async def say(params, ctx):
        return {"messages": [{"content": "pong"}]}

    bot_user = install_bot(make_plugin("echo-bot", {"ping": say}))
    _seed_message(seeded_db, "@echo-bot ping")
    job_id = memory_queue.enqueue(MessageTriggerJob(message_id="msg-1", conversation_id="conv-review", user_id="editor-1"))

    pool = _pool(job_deps, worker_config)
    await pool.start()
    try:
        for _ in range(200):
            if memory_queue.get(job_id).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
    finally:
        await pool.stop()

    assert memory_queue.get(job_id).status == JobStatus.COMPLETED
    assert [m["content"] for m in _bot_messages(seeded_db, bot_user)] == ["pong"]
    assert pool.running is False
