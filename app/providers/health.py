"""Per-provider circuit breaker state."""

import time
from typing import Callable, Dict, Optional

from loguru import logger

from ..models.provider import ProviderHealth

FAILURE_THRESHOLD = 3
RECOVERY_TIME = 300.0


class ProviderHealthTracker:
    """
    In-memory circuit breaker keyed by provider id.

    A provider starts healthy. Each failure increments its consecutive failure
    count; reaching ``failure_threshold`` opens the circuit. An open provider is
    reported unhealthy until ``recovery_time`` seconds have passed since its last
    failure, after which its state is reset and it gets another chance.

    One instance is shared by every run in the process, so an outage affects all
    concurrent runs alike. A restart resets every provider to healthy.
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_time: float = RECOVERY_TIME,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self._clock = clock
        self._health: Dict[str, ProviderHealth] = {}

    def get(self, provider_id: str) -> ProviderHealth:
        """Return a copy of the provider's state. Unknown providers are healthy."""
        health = self._health.get(provider_id)
        return health.model_copy() if health else ProviderHealth()

    def is_healthy(self, provider_id: str) -> bool:
        health = self._health.get(provider_id)
        if health is None:
            return True

        if not health.healthy and health.last_failure_time is not None:
            if self._clock() - health.last_failure_time >= self.recovery_time:
                logger.info(f"Provider {provider_id} recovery window elapsed, retrying")
                del self._health[provider_id]
                return True
            return False

        return health.healthy

    def mark_failure(self, provider_id: str) -> ProviderHealth:
        health = self._health.setdefault(provider_id, ProviderHealth())
        health.consecutive_failures += 1
        health.last_failure_time = self._clock()

        if health.healthy and health.consecutive_failures >= self.failure_threshold:
            health.healthy = False
            logger.warning(
                f"Provider {provider_id} marked unhealthy after "
                f"{health.consecutive_failures} failures"
            )
        return health.model_copy()

    def mark_success(self, provider_id: str) -> ProviderHealth:
        health = self._health.setdefault(provider_id, ProviderHealth())
        health.successes += 1
        health.healthy = True
        health.consecutive_failures = 0
        return health.model_copy()

    def status(self) -> Dict[str, ProviderHealth]:
        return {provider_id: h.model_copy() for provider_id, h in self._health.items()}

    def reset(self, provider_id: Optional[str] = None) -> None:
        if provider_id is None:
            self._health.clear()
        else:
            self._health.pop(provider_id, None)
