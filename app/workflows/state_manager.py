"""Run state persistence: runs, step runs, human tasks and workflow definitions."""

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import WatchError

from ..errors import RunNotFoundError
from ..models.workflow import (
    TERMINAL_RUN_STATUSES,
    HumanTask,
    HumanTaskStatus,
    Run,
    RunStatus,
    StateTransition,
    StepRun,
    WorkflowDefinition,
    utcnow,
)

RunMutator = Callable[[Run], bool]


def apply_transition(
    run: Run,
    new_status: RunStatus,
    trigger: Optional[str] = None,
    **fields: Any,
) -> None:
    """Move ``run`` to ``new_status`` in place, recording the transition."""
    transition = StateTransition(
        from_state=run.status,
        to_state=new_status,
        trigger=trigger or f"State change: {run.status.value} -> {new_status.value}",
        metadata={k: v for k, v in fields.items() if isinstance(v, (str, int, float)) or v is None},
    )

    run.status = new_status
    for name, value in fields.items():
        if value is not None:
            setattr(run, name, value)

    if new_status == RunStatus.RUNNING and not run.started_at:
        run.started_at = utcnow()
    elif new_status in TERMINAL_RUN_STATUSES:
        run.completed_at = utcnow()

    run.history.append(transition)


class RunStateStore(ABC):
    """
    Storage surface required by the workflow engine.

    Every write touches a single record. Run mutations go through
    :meth:`_mutate_run`, which implementations make atomic per run so that
    status compare-and-set is safe against concurrent writers.
    """

    async def connect(self) -> None:
        """Open backend connections. No-op by default."""

    async def disconnect(self) -> None:
        """Close backend connections. No-op by default."""

    # -- runs ---------------------------------------------------------------

    @abstractmethod
    async def create_run(self, run: Run) -> None:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[Run]:
        ...

    @abstractmethod
    async def save_run(self, run: Run) -> None:
        ...

    @abstractmethod
    async def _mutate_run(self, run_id: str, mutator: RunMutator) -> Optional[Run]:
        """Atomically apply ``mutator`` to the stored run.

        The mutator returns False to abort without writing, in which case
        ``None`` is returned. Raises :class:`RunNotFoundError` for unknown ids.
        """

    @abstractmethod
    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> List[Run]:
        ...

    @abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        ...

    async def update_run(self, run_id: str, **fields: Any) -> Run:
        """Overwrite the given fields of a run, leaving its status untouched."""

        def mutate(run: Run) -> bool:
            for name, value in fields.items():
                setattr(run, name, value)
            return True

        run = await self._mutate_run(run_id, mutate)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    async def update_run_status(
        self,
        run_id: str,
        new_status: RunStatus,
        trigger: Optional[str] = None,
        **fields: Any,
    ) -> Run:
        """Unconditionally transition a run, recording the transition."""

        def mutate(run: Run) -> bool:
            apply_transition(run, new_status, trigger, **fields)
            return True

        run = await self._mutate_run(run_id, mutate)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        logger.debug(f"Run {run_id} -> {new_status.value}")
        return run

    async def compare_and_set_status(
        self,
        run_id: str,
        expected: RunStatus,
        new_status: RunStatus,
        trigger: Optional[str] = None,
        **fields: Any,
    ) -> Optional[Run]:
        """Transition only if the run is currently ``expected``.

        Returns the updated run, or ``None`` when another writer got there first.
        """

        def mutate(run: Run) -> bool:
            if run.status != expected:
                return False
            apply_transition(run, new_status, trigger, **fields)
            return True

        return await self._mutate_run(run_id, mutate)

    async def get_history(self, run_id: str) -> List[StateTransition]:
        run = await self.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return list(run.history)

    async def cleanup_old_runs(self, days: int = 30) -> int:
        """Delete terminal runs created more than ``days`` ago."""
        cutoff = utcnow() - timedelta(days=days)
        deleted = 0
        for run in await self.list_runs():
            if run.status in TERMINAL_RUN_STATUSES and run.created_at < cutoff:
                if await self.delete_run(run.id):
                    deleted += 1
        logger.info(f"Cleaned up {deleted} old runs")
        return deleted

    # -- step runs ----------------------------------------------------------

    @abstractmethod
    async def save_step_run(self, step_run: StepRun) -> None:
        """Insert or replace the step run keyed by ``(run_id, step_id)``."""

    @abstractmethod
    async def get_step_run(self, run_id: str, step_id: str) -> Optional[StepRun]:
        ...

    @abstractmethod
    async def list_step_runs(self, run_id: str) -> List[StepRun]:
        ...

    # -- human tasks --------------------------------------------------------

    @abstractmethod
    async def create_human_task(self, task: HumanTask) -> None:
        ...

    @abstractmethod
    async def get_human_task(self, task_id: str) -> Optional[HumanTask]:
        ...

    @abstractmethod
    async def save_human_task(self, task: HumanTask) -> None:
        ...

    @abstractmethod
    async def list_human_tasks(
        self, run_id: Optional[str] = None, status: Optional[HumanTaskStatus] = None
    ) -> List[HumanTask]:
        ...

    # -- workflow definitions -----------------------------------------------

    @abstractmethod
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...


class InMemoryRunStateStore(RunStateStore):
    """Process-local store. Records are copied in and out so callers never alias them."""

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._step_runs: Dict[str, Dict[str, StepRun]] = {}
        self._tasks: Dict[str, HumanTask] = {}
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._lock = asyncio.Lock()

    async def create_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def _mutate_run(self, run_id: str, mutator: RunMutator) -> Optional[Run]:
        async with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            run = stored.model_copy(deep=True)
            if not mutator(run):
                return None
            self._runs[run_id] = run.model_copy(deep=True)
            return run

    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> List[Run]:
        runs = [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (not workflow_id or run.workflow_id == workflow_id)
            and (not status or run.status == status)
        ]
        return sorted(runs, key=lambda r: r.created_at)

    async def delete_run(self, run_id: str) -> bool:
        if self._runs.pop(run_id, None) is None:
            return False
        self._step_runs.pop(run_id, None)
        for task_id in [t.id for t in self._tasks.values() if t.run_id == run_id]:
            del self._tasks[task_id]
        return True

    async def save_step_run(self, step_run: StepRun) -> None:
        self._step_runs.setdefault(step_run.run_id, {})[step_run.step_id] = step_run.model_copy(
            deep=True
        )

    async def get_step_run(self, run_id: str, step_id: str) -> Optional[StepRun]:
        step_run = self._step_runs.get(run_id, {}).get(step_id)
        return step_run.model_copy(deep=True) if step_run else None

    async def list_step_runs(self, run_id: str) -> List[StepRun]:
        return [s.model_copy(deep=True) for s in self._step_runs.get(run_id, {}).values()]

    async def create_human_task(self, task: HumanTask) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def get_human_task(self, task_id: str) -> Optional[HumanTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_human_task(self, task: HumanTask) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def list_human_tasks(
        self, run_id: Optional[str] = None, status: Optional[HumanTaskStatus] = None
    ) -> List[HumanTask]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if (not run_id or task.run_id == run_id) and (not status or task.status == status)
        ]

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.id] = definition

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(workflow_id)


class RedisRunStateStore(RunStateStore):
    """Stores records as JSON documents in Redis.

    Run updates use ``WATCH``/``MULTI`` so a status compare-and-set fails
    cleanly when another writer modified the run first.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", prefix: str = "genflow") -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self._redis:
            self._redis = aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            logger.info("Connected to Redis for run state management")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    async def _client(self) -> aioredis.Redis:
        if not self._redis:
            await self.connect()
        return self._redis

    def _run_key(self, run_id: str) -> str:
        return f"{self.prefix}:run:{run_id}"

    def _workflow_index_key(self, workflow_id: str) -> str:
        return f"{self.prefix}:index:{workflow_id}"

    def _step_runs_key(self, run_id: str) -> str:
        return f"{self.prefix}:steps:{run_id}"

    def _task_key(self, task_id: str) -> str:
        return f"{self.prefix}:task:{task_id}"

    def _run_tasks_key(self, run_id: str) -> str:
        return f"{self.prefix}:tasks:{run_id}"

    def _workflow_key(self, workflow_id: str) -> str:
        return f"{self.prefix}:workflow:{workflow_id}"

    async def create_run(self, run: Run) -> None:
        await self.save_run(run)

    async def get_run(self, run_id: str) -> Optional[Run]:
        redis = await self._client()
        data = await redis.get(self._run_key(run_id))
        return Run.model_validate_json(data) if data else None

    async def save_run(self, run: Run) -> None:
        redis = await self._client()
        await redis.set(self._run_key(run.id), run.model_dump_json())
        await redis.sadd(self._workflow_index_key(run.workflow_id), run.id)
        logger.debug(f"Saved run state: {run.id} - {run.status.value}")

    async def _mutate_run(self, run_id: str, mutator: RunMutator) -> Optional[Run]:
        redis = await self._client()
        key = self._run_key(run_id)
        async with redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if data is None:
                        raise RunNotFoundError(f"Run not found: {run_id}")
                    run = Run.model_validate_json(data)
                    if not mutator(run):
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.set(key, run.model_dump_json())
                    await pipe.execute()
                    return run
                except WatchError:
                    logger.debug(f"Concurrent update on run {run_id}, retrying")
                    continue

    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> List[Run]:
        redis = await self._client()

        if workflow_id:
            run_ids = list(await redis.smembers(self._workflow_index_key(workflow_id)))
        else:
            run_ids = []
            pattern = f"{self.prefix}:run:"
            async for key in redis.scan_iter(match=f"{pattern}*", count=100):
                run_ids.append(key[len(pattern):])

        runs = []
        for run_id in run_ids:
            run = await self.get_run(run_id)
            if run and (not status or run.status == status):
                runs.append(run)
        return sorted(runs, key=lambda r: r.created_at)

    async def delete_run(self, run_id: str) -> bool:
        redis = await self._client()
        run = await self.get_run(run_id)
        if not run:
            return False

        task_ids = await redis.smembers(self._run_tasks_key(run_id))
        await redis.srem(self._workflow_index_key(run.workflow_id), run_id)
        await redis.delete(
            self._run_key(run_id),
            self._step_runs_key(run_id),
            self._run_tasks_key(run_id),
            *[self._task_key(task_id) for task_id in task_ids],
        )
        logger.info(f"Deleted run: {run_id}")
        return True

    async def save_step_run(self, step_run: StepRun) -> None:
        redis = await self._client()
        await redis.hset(
            self._step_runs_key(step_run.run_id), step_run.step_id, step_run.model_dump_json()
        )

    async def get_step_run(self, run_id: str, step_id: str) -> Optional[StepRun]:
        redis = await self._client()
        data = await redis.hget(self._step_runs_key(run_id), step_id)
        return StepRun.model_validate_json(data) if data else None

    async def list_step_runs(self, run_id: str) -> List[StepRun]:
        redis = await self._client()
        rows = await redis.hgetall(self._step_runs_key(run_id))
        step_runs = [StepRun.model_validate_json(row) for row in rows.values()]
        return sorted(step_runs, key=lambda s: s.started_at or s.completed_at or utcnow())

    async def create_human_task(self, task: HumanTask) -> None:
        redis = await self._client()
        await redis.set(self._task_key(task.id), task.model_dump_json())
        await redis.sadd(self._run_tasks_key(task.run_id), task.id)

    async def get_human_task(self, task_id: str) -> Optional[HumanTask]:
        redis = await self._client()
        data = await redis.get(self._task_key(task_id))
        return HumanTask.model_validate_json(data) if data else None

    async def save_human_task(self, task: HumanTask) -> None:
        redis = await self._client()
        await redis.set(self._task_key(task.id), task.model_dump_json())

    async def list_human_tasks(
        self, run_id: Optional[str] = None, status: Optional[HumanTaskStatus] = None
    ) -> List[HumanTask]:
        redis = await self._client()

        if run_id:
            task_ids = list(await redis.smembers(self._run_tasks_key(run_id)))
        else:
            task_ids = []
            pattern = f"{self.prefix}:task:"
            async for key in redis.scan_iter(match=f"{pattern}*", count=100):
                task_ids.append(key[len(pattern):])

        tasks = []
        for task_id in task_ids:
            task = await self.get_human_task(task_id)
            if task and (not status or task.status == status):
                tasks.append(task)
        return sorted(tasks, key=lambda t: t.created_at)

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        redis = await self._client()
        await redis.set(self._workflow_key(definition.id), definition.model_dump_json(by_alias=True))

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        redis = await self._client()
        data = await redis.get(self._workflow_key(workflow_id))
        return WorkflowDefinition.model_validate_json(data) if data else None
