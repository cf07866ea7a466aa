"""Generation client backed by the failover router."""

from typing import Any, Dict, List, Optional

from ..models.provider import GenerationResult, RouteResult
from .base import GenerationClient
from .router import ProviderRouter


class RoutedGenerationClient(GenerationClient):
    """Adapts :class:`ProviderRouter` to the dispatcher's collaborator interface.

    The returned result is tagged with the serving provider, and its credit
    cost falls back to the registry cost when the backend did not report one.
    """

    def __init__(self, router: ProviderRouter) -> None:
        self.router = router

    async def generate_text(
        self, model_id: str, prompt: str, options: Dict[str, Any]
    ) -> GenerationResult:
        route = await self.router.route(model_id, "llm", {"prompt": prompt, "options": options})
        return self._tag(route)

    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        route = await self.router.route(
            model_id,
            "image",
            {"prompt": prompt, "options": options, "input_images": input_images or []},
        )
        return self._tag(route)

    async def generate_video(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        route = await self.router.route(
            model_id,
            "video",
            {"prompt": prompt, "options": options, "input_images": input_images or []},
        )
        return self._tag(route)

    async def embed(
        self, model_id: str, text: str, options: Dict[str, Any]
    ) -> GenerationResult:
        route = await self.router.route(model_id, "embedding", {"text": text, "options": options})
        return self._tag(route)

    @staticmethod
    def _tag(route: RouteResult) -> GenerationResult:
        credits = route.result.credits_used
        return route.result.model_copy(
            update={
                "provider": route.provider,
                "credits_used": route.cost if credits is None else credits,
            }
        )
