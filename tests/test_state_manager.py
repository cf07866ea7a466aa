"""Tests for run state persistence, in memory and on Redis."""

from datetime import timedelta

import fakeredis.aioredis
import pytest
import pytest_asyncio

from app.errors import RunNotFoundError
from app.models.workflow import (
    HumanTask,
    HumanTaskStatus,
    Run,
    RunStatus,
    StepDefinition,
    StepRun,
    StepRunStatus,
    WorkflowDefinition,
    utcnow,
)
from app.workflows.state_manager import (
    InMemoryRunStateStore,
    RedisRunStateStore,
    apply_transition,
)


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request):
    """Yield each store implementation; Redis is backed by fakeredis."""
    if request.param == "memory":
        yield InMemoryRunStateStore()
        return

    redis_store = RedisRunStateStore(prefix="test")
    redis_store._redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield redis_store
    await redis_store.disconnect()


def _run(run_id="run-1", workflow_id="wf-1", **fields):
    return Run(id=run_id, workflow_id=workflow_id, user_id="user-1", **fields)


@pytest.mark.unit
def test_apply_transition_records_history():
    run = _run()

    apply_transition(run, RunStatus.RUNNING)
    apply_transition(run, RunStatus.FAILED, "Step failed", error="boom", failed_step="hero")

    assert run.status == RunStatus.FAILED
    assert run.error == "boom"
    assert run.failed_step == "hero"
    assert run.started_at is not None
    assert run.completed_at is not None
    assert [(h.from_state, h.to_state) for h in run.history] == [
        (RunStatus.PENDING, RunStatus.RUNNING),
        (RunStatus.RUNNING, RunStatus.FAILED),
    ]
    assert run.history[1].trigger == "Step failed"
    assert run.history[1].metadata == {"error": "boom", "failed_step": "hero"}


@pytest.mark.integration
@pytest.mark.asyncio
class TestRunStateStore:
    """Behaviour shared by every store implementation."""

    async def test_create_and_get_run(self, store):
        await store.create_run(_run(inputs={"x": 1}))

        run = await store.get_run("run-1")

        assert run.inputs == {"x": 1}
        assert run.status == RunStatus.PENDING
        assert await store.get_run("missing") is None

    async def test_returned_runs_are_copies(self, store):
        await store.create_run(_run())

        run = await store.get_run("run-1")
        run.state.completed_steps.append("a")

        assert (await store.get_run("run-1")).state.completed_steps == []

    async def test_update_run_keeps_status(self, store):
        await store.create_run(_run())
        await store.update_run_status("run-1", RunStatus.RUNNING)

        run = await store.update_run("run-1", credits_used=0.25)

        assert run.status == RunStatus.RUNNING
        assert (await store.get_run("run-1")).credits_used == 0.25

    async def test_compare_and_set_status(self, store):
        await store.create_run(_run())

        won = await store.compare_and_set_status("run-1", RunStatus.PENDING, RunStatus.RUNNING)
        lost = await store.compare_and_set_status("run-1", RunStatus.PENDING, RunStatus.CANCELLED)

        assert won.status == RunStatus.RUNNING
        assert lost is None
        assert (await store.get_run("run-1")).status == RunStatus.RUNNING

    async def test_mutating_unknown_run(self, store):
        with pytest.raises(RunNotFoundError):
            await store.update_run_status("missing", RunStatus.RUNNING)
        with pytest.raises(RunNotFoundError, match="missing"):
            await store.update_run("missing", error="boom")

    async def test_history(self, store):
        await store.create_run(_run())
        await store.update_run_status("run-1", RunStatus.RUNNING)
        await store.update_run_status("run-1", RunStatus.COMPLETED)

        history = await store.get_history("run-1")

        assert [h.to_state for h in history] == [RunStatus.RUNNING, RunStatus.COMPLETED]
        with pytest.raises(RunNotFoundError):
            await store.get_history("missing")

    async def test_list_runs_filters(self, store):
        await store.create_run(_run("r1", "wf-1"))
        await store.create_run(_run("r2", "wf-2"))
        await store.create_run(_run("r3", "wf-1"))
        await store.update_run_status("r3", RunStatus.RUNNING)

        assert {r.id for r in await store.list_runs()} == {"r1", "r2", "r3"}
        assert {r.id for r in await store.list_runs("wf-1")} == {"r1", "r3"}
        assert [r.id for r in await store.list_runs("wf-1", RunStatus.RUNNING)] == ["r3"]

    async def test_step_runs_upsert_by_step(self, store):
        await store.create_run(_run())
        step_run = StepRun(id="s1", run_id="run-1", step_id="hero", started_at=utcnow())
        await store.save_step_run(step_run)

        step_run.status = StepRunStatus.COMPLETED
        step_run.retry_count = 2
        await store.save_step_run(step_run)

        saved = await store.get_step_run("run-1", "hero")
        assert saved.status == StepRunStatus.COMPLETED
        assert saved.attempts == 3
        assert len(await store.list_step_runs("run-1")) == 1
        assert await store.get_step_run("run-1", "other") is None

    async def test_human_tasks(self, store):
        await store.create_run(_run())
        task = HumanTask(id="t1", run_id="run-1", step_id="approve", title="Approve")
        await store.create_human_task(task)

        task.status = HumanTaskStatus.COMPLETED
        await store.save_human_task(task)
        await store.create_human_task(
            HumanTask(id="t2", run_id="run-1", step_id="review", title="Review")
        )

        assert (await store.get_human_task("t1")).status == HumanTaskStatus.COMPLETED
        pending = await store.list_human_tasks("run-1", HumanTaskStatus.PENDING)
        assert [t.id for t in pending] == ["t2"]
        assert {t.id for t in await store.list_human_tasks()} == {"t1", "t2"}

    async def test_workflow_definitions(self, store):
        definition = WorkflowDefinition(
            id="wf-1",
            name="Stored",
            steps=[StepDefinition(id="a", type="llm"), StepDefinition(id="b", type="image", dependsOn=["a"])],
        )
        await store.save_workflow(definition)

        loaded = await store.get_workflow("wf-1")

        assert loaded.get_step("b").depends_on == ["a"]
        assert await store.get_workflow("missing") is None

    async def test_delete_and_cleanup(self, store):
        old = _run("old", created_at=utcnow() - timedelta(days=40))
        await store.create_run(old)
        await store.update_run_status("old", RunStatus.COMPLETED)
        await store.create_run(_run("fresh"))
        await store.create_human_task(HumanTask(id="t1", run_id="old", step_id="a", title="A"))

        deleted = await store.cleanup_old_runs(days=30)

        assert deleted == 1
        assert await store.get_run("old") is None
        assert await store.get_human_task("t1") is None
        assert await store.get_run("fresh") is not None
        assert await store.delete_run("old") is False
