"""Step dispatch: runs one resolved step by type."""

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
from loguru import logger

from ..config import OrchestratorSettings
from ..errors import StepExecutionError
from ..models.provider import GenerationResult
from ..models.workflow import (
    HumanTaskType,
    StepCondition,
    StepDefinition,
    StepType,
)
from ..providers.base import GenerationClient
from .conditions import evaluate_condition
from .references import is_unresolved, resolve_inputs, resolve_value

DEFAULT_OUTPUT_NAMES = {
    StepType.LLM.value: "text",
    StepType.IMAGE.value: "image",
    StepType.VIDEO.value: "video",
    StepType.EMBEDDING.value: "embedding",
}

DEFAULT_MODELS = {
    StepType.LLM.value: "gpt-4o-mini",
    StepType.IMAGE.value: "flux-schnell",
    StepType.VIDEO.value: "kling-1.5",
    StepType.EMBEDDING.value: "text-embedding-3-small",
}


@dataclass
class HumanTaskRequest:
    """What a human step asks for before the run can continue."""

    type: HumanTaskType
    title: str
    description: Optional[str]
    data: Dict[str, Any]
    expires_in: Optional[float] = None


@dataclass
class DispatchResult:
    outputs: Dict[str, Any] = field(default_factory=dict)
    credits_used: float = 0.0
    human_task: Optional[HumanTaskRequest] = None

    @property
    def requires_human(self) -> bool:
        return self.human_task is not None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for empty or zero-norm vectors.

    Vectors of different lengths are rejected.
    """
    if not isinstance(a, (list, tuple)) or not isinstance(b, (list, tuple)):
        raise ValueError("cosine-similarity requires two vectors")
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    if not a:
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _as_text(value: Any) -> Optional[str]:
    """Prompt text for a resolved input; ``None`` when missing or empty."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value)
    return str(value)


async def run_batch(coros: Sequence[Awaitable[Any]]) -> List[Any]:
    """Run ``coros`` concurrently and return their results in order.

    On the first failure the still-running siblings are cancelled and
    awaited before the exception propagates.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return []
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if task in done and not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


Handler = Callable[[StepDefinition, Dict[str, Any], Mapping[str, Any]], Awaitable[DispatchResult]]


class StepDispatcher:
    """
    Invokes the collaborator for a step's type.

    Generation steps go through the injected :class:`GenerationClient`
    (usually backed by the provider failover router). Every failure is
    surfaced as :class:`StepExecutionError` so the engine can apply the
    step's retry policy.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        generation: Optional[GenerationClient] = None,
        http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self.settings = settings
        self.generation = generation
        self._http_client_factory = http_client_factory
        self._handlers: Dict[str, Handler] = {
            StepType.LLM.value: self._run_generation,
            StepType.IMAGE.value: self._run_generation,
            StepType.VIDEO.value: self._run_generation,
            StepType.EMBEDDING.value: self._run_generation,
            StepType.TRANSFORM.value: self._run_transform,
            StepType.CONDITION.value: self._run_condition,
            StepType.LOOP.value: self._run_loop,
            StepType.HUMAN.value: self._run_human,
            StepType.WEBHOOK.value: self._run_webhook,
        }

    async def dispatch(
        self,
        step: StepDefinition,
        inputs: Dict[str, Any],
        context: Mapping[str, Any],
    ) -> DispatchResult:
        """Run ``step`` with already-resolved ``inputs``."""
        handler = self._handlers.get(step.type)
        if handler is None:
            raise StepExecutionError(step.id, f"Unknown step type: {step.type}")

        try:
            return await handler(step, inputs, context)
        except StepExecutionError:
            raise
        except Exception as e:
            raise StepExecutionError(step.id, str(e) or e.__class__.__name__) from e

    # -- generation -----------------------------------------------------------

    async def _run_generation(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        if self.generation is None:
            raise StepExecutionError(step.id, f"{step.type} provider not configured")

        model_id = step.model or DEFAULT_MODELS[step.type]
        options = {**step.config, **(inputs.get("options") or {})}

        if step.type == StepType.EMBEDDING.value:
            text = _as_text(inputs.get("text"))
            if text is None:
                raise StepExecutionError(step.id, "Embedding step requires text input")
            result = await self.generation.embed(model_id, text, options)
            value: Any = result.vector
        else:
            prompt = _as_text(inputs.get("prompt"))
            if prompt is None:
                raise StepExecutionError(step.id, f"{step.type} step requires prompt input")
            result, value = await self._generate(step, model_id, prompt, options, inputs)

        if value is None:
            raise StepExecutionError(step.id, f"{step.type} provider returned no output")

        output_name = next(iter(step.outputs), DEFAULT_OUTPUT_NAMES[step.type])
        outputs = {output_name: value}
        if result.provider:
            outputs["provider"] = result.provider

        credits = result.credits_used
        if credits is None:
            credits = self.settings.step_credit_costs.get(step.type, 0.0)
        return DispatchResult(outputs=outputs, credits_used=credits)

    async def _generate(
        self,
        step: StepDefinition,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        inputs: Dict[str, Any],
    ) -> Tuple[GenerationResult, Any]:
        images = inputs.get("images") or inputs.get("image") or []
        if isinstance(images, str):
            images = [images]

        if step.type == StepType.LLM.value:
            result = await self.generation.generate_text(model_id, prompt, options)
            return result, result.text
        if step.type == StepType.IMAGE.value:
            result = await self.generation.generate_image(model_id, prompt, options, images)
            return result, result.primary_url
        result = await self.generation.generate_video(model_id, prompt, options, images)
        return result, result.primary_url

    # -- transform / condition --------------------------------------------------

    async def _run_transform(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        operation = step.config.get("operation")

        if operation is None:
            return DispatchResult(outputs=dict(inputs))
        if operation == "cosine-similarity":
            score = cosine_similarity(inputs.get("vectorA"), inputs.get("vectorB"))
            return DispatchResult(outputs={"score": score})
        if operation == "json-parse":
            text = inputs.get("text")
            data = json.loads(text) if isinstance(text, str) else text
            return DispatchResult(outputs={"data": data})
        if operation == "merge":
            return DispatchResult(outputs={"merged": dict(inputs)})
        if operation == "split":
            separator = step.config.get("separator", "\n")
            parts = [p.strip() for p in str(inputs.get("text", "")).split(separator)]
            return DispatchResult(outputs={"parts": [p for p in parts if p]})

        raise StepExecutionError(step.id, f"Unknown transform operation: {operation}")

    async def _run_condition(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        raw = step.config.get("condition")
        if raw is None:
            raise StepExecutionError(step.id, "Condition step requires config.condition")
        condition = StepCondition.model_validate(raw)
        return DispatchResult(outputs={"result": evaluate_condition(condition, context)})

    # -- loop -------------------------------------------------------------------

    async def _run_loop(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        items = self._loop_items(step, inputs, context)
        inner_steps = self._loop_body(step)

        async def run_item(index: int, item: Any) -> Tuple[Any, float]:
            item_context: Dict[str, Any] = {
                **context,
                "item": item,
                "loop": {"index": index, "item": item},
            }
            outputs: Any = {"item": item}
            credits = 0.0
            for inner in inner_steps:
                if inner.condition is not None and not evaluate_condition(
                    inner.condition, item_context
                ):
                    logger.debug(f"Loop {step.id}[{index}]: skipping {inner.id}")
                    item_context[inner.id] = {}
                    continue
                item_inputs = resolve_inputs(inner.inputs, item_context)
                result = await self.dispatch(inner, item_inputs, item_context)
                item_context[inner.id] = result.outputs
                outputs = result.outputs
                credits += result.credits_used
            return outputs, credits

        results: List[Tuple[Any, float]] = []
        if step.config.get("parallel"):
            max_parallel = self._loop_max_parallel(step)
            for start in range(0, len(items), max_parallel):
                batch = items[start:start + max_parallel]
                logger.debug(
                    f"Loop {step.id}: batch of {len(batch)} starting at item {start}"
                )
                results.extend(
                    await run_batch(
                        [run_item(start + offset, item) for offset, item in enumerate(batch)]
                    )
                )
        else:
            for index, item in enumerate(items):
                results.append(await run_item(index, item))

        return DispatchResult(
            outputs={"items": [outputs for outputs, _ in results]},
            credits_used=sum(credits for _, credits in results),
        )

    @staticmethod
    def _loop_body(step: StepDefinition) -> List[StepDefinition]:
        """Inner steps of a loop; ``config.step`` is shorthand for a single one."""
        inner_steps = list(step.steps)
        if not inner_steps and step.config.get("step"):
            inner_steps = [
                StepDefinition.model_validate({"id": f"{step.id}.item", **step.config["step"]})
            ]
        for inner in inner_steps:
            if inner.type == StepType.HUMAN.value:
                raise StepExecutionError(step.id, "Human steps are not allowed inside loops")
        return inner_steps

    def _loop_max_parallel(self, step: StepDefinition) -> int:
        value = step.config.get("maxParallel")
        if value is None:
            return self.settings.loop_max_parallel
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise StepExecutionError(
                step.id, f"Loop maxParallel must be a positive integer, got {value!r}"
            )
        return value

    @staticmethod
    def _loop_items(
        step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> List[Any]:
        items = inputs.get("items", step.config.get("items"))
        if is_unresolved(items):
            items = resolve_value(items, context)
        if isinstance(items, str):
            try:
                items = json.loads(items)
            except ValueError:
                pass
        if not isinstance(items, list):
            raise StepExecutionError(step.id, "Loop items must be an array")
        return items

    # -- human / webhook --------------------------------------------------------

    async def _run_human(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        message = resolve_value(step.config.get("message"), context)
        expires_in = step.config.get("expiresIn", self.settings.human_task_ttl_seconds)
        return DispatchResult(
            human_task=HumanTaskRequest(
                type=HumanTaskType(step.config.get("type", HumanTaskType.APPROVAL.value)),
                title=step.name or step.config.get("title") or "Action Required",
                description=message,
                data=dict(inputs),
                expires_in=float(expires_in) if expires_in is not None else None,
            )
        )

    async def _run_webhook(
        self, step: StepDefinition, inputs: Dict[str, Any], context: Mapping[str, Any]
    ) -> DispatchResult:
        url = resolve_value(step.config.get("url"), context)
        if not url or is_unresolved(url):
            raise StepExecutionError(step.id, "Webhook step requires config.url")
        method = str(step.config.get("method", "POST")).upper()
        headers = step.config.get("headers") or {}
        body = inputs.get("body", inputs)

        logger.info(f"Webhook step {step.id}: {method} {url}")
        async with self._http_client_factory(
            timeout=self.settings.webhook_timeout_seconds
        ) as client:
            if method in ("GET", "DELETE"):
                response = await client.request(method, url, params=body, headers=headers)
            else:
                response = await client.request(method, url, json=body, headers=headers)
            response.raise_for_status()

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return DispatchResult(outputs={"status_code": response.status_code, "response": payload})
