import time

import pytest
from prometheus_client import REGISTRY
from pybreaker import CircuitBreakerError

from rental_engine.config.settings import Settings
from rental_engine.core.circuit_breaker import (
    BreakerPolicy,
    BreakerRegistry,
    MetricsBreakerListener,
)


def breaker_state_metric(circuit_name, service="rental-engine"):
    return REGISTRY.get_sample_value(
        "rental_system_circuit_breaker_state",
        {"service": service, "circuit_name": circuit_name},
    )


def breaker_failures_metric(circuit_name, service):
    return REGISTRY.get_sample_value(
        "rental_system_circuit_breaker_failures_total",
        {"service": service, "circuit_name": circuit_name},
    )


@pytest.fixture
def policy():
    return BreakerPolicy.notifications(
        Settings(cb_notify_fail_max=2, cb_notify_reset_timeout=1)
    )


@pytest.fixture
def registry():
    return BreakerRegistry()


def failing_function():
    raise Exception("Service down")


def test_notification_policy_from_settings(policy):
    assert policy.name == "notification_operations"
    assert policy.fail_max == 2
    assert policy.reset_timeout == 1
    assert KeyError in policy.exclude


def test_registry_reuses_breaker_per_policy(registry, policy):
    breaker = registry.breaker_for(policy)

    assert breaker is registry.breaker_for(policy)
    assert breaker.name == "notification_operations"
    assert breaker.fail_max == 2
    assert breaker.current_state == "closed"


def test_breaker_opens_and_reports_metrics(registry, policy):
    breaker = registry.breaker_for(policy)

    with pytest.raises(Exception):
        breaker(failing_function)()
    with pytest.raises(CircuitBreakerError):
        breaker(failing_function)()

    assert breaker.current_state == "open"
    assert breaker_state_metric("notification_operations") == 1.0

    with pytest.raises(CircuitBreakerError):
        breaker(failing_function)()


def test_listener_labels_metrics_with_its_service():
    registry = BreakerRegistry(MetricsBreakerListener("station-gateway"))
    breaker = registry.breaker_for(BreakerPolicy("gateway_calls", 1, 30))

    with pytest.raises(CircuitBreakerError):
        breaker(failing_function)()

    assert breaker_state_metric("gateway_calls", service="station-gateway") == 1.0
    assert breaker_failures_metric("gateway_calls", "station-gateway") >= 1.0


def test_breaker_ignores_excluded_exceptions(registry, policy):
    breaker = registry.breaker_for(policy)

    def function_with_key_error():
        raise KeyError("Missing key")

    with pytest.raises(KeyError):
        breaker(function_with_key_error)()

    assert breaker.fail_counter == 0
    assert breaker.current_state == "closed"


def test_success_resets_counter(registry, policy):
    breaker = registry.breaker_for(policy)

    with pytest.raises(Exception):
        breaker(failing_function)()
    assert breaker.fail_counter == 1

    assert breaker(lambda: "success")() == "success"
    assert breaker.fail_counter == 0


def test_breaker_recovers_after_reset_timeout(registry, policy):
    breaker = registry.breaker_for(policy)

    for _ in range(2):
        with pytest.raises((Exception, CircuitBreakerError)):
            breaker(failing_function)()
    assert breaker.current_state == "open"

    time.sleep(1.1)

    assert breaker(lambda: "success")() == "success"
    assert breaker.current_state == "closed"
    assert breaker_state_metric("notification_operations") == 0.0


def test_snapshot(registry, policy):
    assert registry.snapshot() == {}

    registry.breaker_for(policy)

    assert registry.snapshot() == {
        "notification_operations": {
            "state": "closed",
            "fail_counter": 0,
            "fail_max": 2,
            "reset_timeout": 1,
        }
    }
