from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

import pybreaker
from loguru import logger

from rental_engine.config.settings import Settings
from rental_engine.monitoring.metrics import MetricsCollector


@dataclass(frozen=True)
class BreakerPolicy:
    name: str
    fail_max: int
    reset_timeout: int
    # errors raised by the caller's own code, not by the remote side
    exclude: Tuple[Type[BaseException], ...] = ()

    @classmethod
    def notifications(cls, settings: Settings) -> "BreakerPolicy":
        return cls(
            name="notification_operations",
            fail_max=settings.cb_notify_fail_max,
            reset_timeout=settings.cb_notify_reset_timeout,
            exclude=(KeyError, ValueError),
        )


class MetricsBreakerListener(pybreaker.CircuitBreakerListener):
    """Publishes breaker transitions and failures under one service label."""

    def __init__(self, service_name: str = MetricsCollector.SERVICE_NAME):
        self.service_name = service_name

    def state_change(self, cb, old_state, new_state) -> None:
        state = getattr(new_state, "name", str(new_state))
        log = logger.warning if state == "open" else logger.info
        log(
            f"[{self.service_name}] breaker {cb.name}: "
            f"{getattr(old_state, 'name', old_state)} -> {state} "
            f"({cb.fail_counter}/{cb.fail_max} failures)"
        )
        MetricsCollector.record_circuit_breaker_state(
            cb.name, state, service=self.service_name
        )

    def failure(self, cb, exc) -> None:
        logger.debug(f"[{self.service_name}] breaker {cb.name} counted {exc!r}")
        MetricsCollector.record_circuit_breaker_failure(cb.name, service=self.service_name)


class BreakerRegistry:
    """One breaker per policy name, all sharing a metrics listener."""

    def __init__(self, listener: Optional[pybreaker.CircuitBreakerListener] = None):
        self.listener = listener or MetricsBreakerListener()
        self._breakers: Dict[str, pybreaker.CircuitBreaker] = {}

    def breaker_for(self, policy: BreakerPolicy) -> pybreaker.CircuitBreaker:
        breaker = self._breakers.get(policy.name)
        if breaker is None:
            breaker = pybreaker.CircuitBreaker(
                fail_max=policy.fail_max,
                reset_timeout=policy.reset_timeout,
                exclude=list(policy.exclude),
                name=policy.name,
                listeners=[self.listener],
            )
            self._breakers[policy.name] = breaker
        return breaker

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "state": breaker.current_state,
                "fail_counter": breaker.fail_counter,
                "fail_max": breaker.fail_max,
                "reset_timeout": breaker.reset_timeout,
            }
            for name, breaker in self._breakers.items()
        }
