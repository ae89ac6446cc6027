import pytest

from botflow.models.actions import ActionContext, ActionKind
from botflow.services.action_processor import ActionProcessor, build_handler_registry

MANUSCRIPT_ID = "11111111-2222-3333-4444-555555555555"


def _ctx(user_id: str = "editor-1", conversation_id: str = "conv-editorial") -> ActionContext:
    return ActionContext(manuscript_id=MANUSCRIPT_ID, user_id=user_id, conversation_id=conversation_id)


def _recording_handlers(calls: list, *, failing: set[ActionKind] = frozenset()):
    def make(kind: ActionKind):
        async def handler(data, ctx):
            calls.append((kind.value, ctx))
            if kind in failing:
                raise RuntimeError(f"{kind.value} exploded")

        return handler

    return {kind: make(kind) for kind in ActionKind}


def test_handler_registry_covers_every_action_kind(action_services):
    registry = build_handler_registry(action_services)
    assert set(registry) == set(ActionKind)


@pytest.mark.asyncio
async def test_failing_action_does_not_block_later_actions():
    calls: list = []
    processor = ActionProcessor(_recording_handlers(calls, failing={ActionKind.CREATE_CONVERSATION}))
    ctx = _ctx()

    result = await processor.process_actions(
        [
            {"type": "UPDATE_MANUSCRIPT_STATUS", "data": {"status": "ACCEPTED"}},
            {"type": "CREATE_CONVERSATION", "data": {"title": "Side thread"}},
            {"type": "UPDATE_WORKFLOW_PHASE", "data": {"phase": "DELIBERATION"}},
        ],
        ctx,
    )

    assert [c[0] for c in calls] == [
        "UPDATE_MANUSCRIPT_STATUS",
        "CREATE_CONVERSATION",
        "UPDATE_WORKFLOW_PHASE",
    ]
    assert result.processed == ["UPDATE_MANUSCRIPT_STATUS", "UPDATE_WORKFLOW_PHASE"]
    assert result.failed == [("CREATE_CONVERSATION", "CREATE_CONVERSATION exploded")]
    # 整批共享同一个上下文
    assert all(c[1] is ctx for c in calls)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "size, failing_at",
    [(1, 0), (2, 0), (2, 1), (5, 0), (5, 2), (5, 4), (8, 3)],
)
async def test_one_failure_never_stops_the_rest_of_the_batch(size, failing_at):
    seen: list[str] = []

    async def create_conversation(data, ctx):
        seen.append(data.title)
        if data.title == f"thread-{failing_at}":
            raise RuntimeError("conversation store offline")

    handlers = _recording_handlers([])
    handlers[ActionKind.CREATE_CONVERSATION] = create_conversation
    processor = ActionProcessor(handlers)

    result = await processor.process_actions(
        [{"type": "CREATE_CONVERSATION", "data": {"title": f"thread-{i}"}} for i in range(size)],
        _ctx(),
    )

    assert seen == [f"thread-{i}" for i in range(size)]
    assert len(result.processed) == size - 1
    assert result.failed == [("CREATE_CONVERSATION", "conversation store offline")]


@pytest.mark.asyncio
async def test_unknown_action_kind_is_skipped_not_failed():
    calls: list = []
    processor = ActionProcessor(_recording_handlers(calls))

    result = await processor.process_actions(
        [
            {"type": "LAUNCH_ROCKET", "data": {}},
            {"type": "CREATE_CONVERSATION", "data": {"title": "Kept"}},
        ],
        _ctx(),
    )

    assert result.skipped == ["LAUNCH_ROCKET"]
    assert result.failed == []
    assert result.processed == ["CREATE_CONVERSATION"]


@pytest.mark.asyncio
async def test_invalid_payload_fails_only_that_action():
    calls: list = []
    processor = ActionProcessor(_recording_handlers(calls))

    result = await processor.process_actions(
        [
            {"type": "ASSIGN_REVIEWER", "data": {"reviewers": []}},
            {"type": "CREATE_CONVERSATION", "data": {"title": "Kept"}},
        ],
        _ctx(),
    )

    assert [k for k, _ in result.failed] == ["ASSIGN_REVIEWER"]
    assert result.processed == ["CREATE_CONVERSATION"]
    assert [c[0] for c in calls] == ["CREATE_CONVERSATION"]


@pytest.mark.asyncio
async def test_real_handlers_isolate_rejected_transition(action_services, seeded_db):
    processor = ActionProcessor.from_services(action_services)

    result = await processor.process_actions(
        [
            {"type": "UPDATE_MANUSCRIPT_STATUS", "data": {"status": "PUBLISHED"}},
            {"type": "CREATE_CONVERSATION", "data": {"title": "Statistics check", "type": "editorial"}},
        ],
        _ctx(),
    )

    assert [k for k, _ in result.failed] == ["UPDATE_MANUSCRIPT_STATUS"]
    assert "ACCEPTED" in result.failed[0][1]
    assert result.processed == ["CREATE_CONVERSATION"]
    assert seeded_db.rows("manuscripts", id=MANUSCRIPT_ID)[0]["status"] == "UNDER_REVIEW"
    created = seeded_db.rows("conversations", title="Statistics check")
    assert len(created) == 1
    assert created[0]["type"] == "EDITORIAL"
    assert created[0]["privacy"] == "PRIVATE"


@pytest.mark.asyncio
async def test_create_conversation_is_idempotent(action_services, seeded_db):
    processor = ActionProcessor.from_services(action_services)
    action = {
        "type": "CREATE_CONVERSATION",
        "data": {"title": "Data availability", "participantIds": ["author-1", "author-1"]},
    }

    await processor.process_actions([action], _ctx())
    await processor.process_actions([action], _ctx())

    convs = seeded_db.rows("conversations", title="Data availability")
    assert len(convs) == 1
    participants = seeded_db.rows("conversation_participants", conversation_id=convs[0]["id"])
    assert sorted((p["user_id"], p["role"]) for p in participants) == [
        ("author-1", "PARTICIPANT"),
        ("editor-1", "MODERATOR"),
    ]
