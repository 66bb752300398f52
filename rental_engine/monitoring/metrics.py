from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

# Business metrics - rental engine
rental_transitions_total = Counter(
    "rental_system_rental_transitions_total",
    "Rental lifecycle transitions by outcome",
    ["service", "operation", "outcome"],  # operation=start/extend/end/lost/cancel
)

rental_duration_seconds = Histogram(
    "rental_system_rental_duration_seconds",
    "Duration of completed rentals in seconds",
    ["service"],
    buckets=[60, 300, 900, 1800, 3600, 7200, 14400, 28800, 86400],  # 1min to 1day
)

rental_revenue_total = Counter(
    "rental_system_rental_revenue_total",
    "Charged amount including tax and late fees, in TZS",
    ["service"],
)

qr_sessions_total = Counter(
    "rental_system_qr_sessions_total",
    "QR session operations",
    ["service", "purpose", "outcome"],  # outcome=issued/validated/expired/mismatch
)

notification_failures_total = Counter(
    "rental_system_notification_failures_total",
    "Notifications that could not be dispatched after commit",
    ["service", "kind"],
)

# Technical metrics
circuit_breaker_state = Gauge(
    "rental_system_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service", "circuit_name"],
)

circuit_breaker_failures = Counter(
    "rental_system_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service", "circuit_name"],
)

# Application info
app_info = Info("rental_system_app_info", "Application information")


def init_app_info(version: str = "1.0.0"):
    app_info.info({"version": version, "service": "rental-engine", "component": "core"})


def start_metrics_server(port: int = 8001):
    start_http_server(port)


class MetricsCollector:
    SERVICE_NAME = "rental-engine"

    @staticmethod
    def record_transition(operation: str, outcome: str):
        rental_transitions_total.labels(
            service=MetricsCollector.SERVICE_NAME, operation=operation, outcome=outcome
        ).inc()

    @staticmethod
    def record_completed_rental(duration_sec: float, charged):
        rental_duration_seconds.labels(service=MetricsCollector.SERVICE_NAME).observe(
            duration_sec
        )
        rental_revenue_total.labels(service=MetricsCollector.SERVICE_NAME).inc(
            float(charged)
        )

    @staticmethod
    def record_qr_session(purpose: str, outcome: str):
        qr_sessions_total.labels(
            service=MetricsCollector.SERVICE_NAME, purpose=purpose, outcome=outcome
        ).inc()

    @staticmethod
    def record_notification_failure(kind: str):
        notification_failures_total.labels(
            service=MetricsCollector.SERVICE_NAME, kind=kind
        ).inc()

    @staticmethod
    def record_circuit_breaker_state(
        circuit_name: str, state: str, service: Optional[str] = None
    ):
        state_value = {"closed": 0, "open": 1, "half-open": 2}.get(state, 0)
        circuit_breaker_state.labels(
            service=service or MetricsCollector.SERVICE_NAME, circuit_name=circuit_name
        ).set(state_value)

    @staticmethod
    def record_circuit_breaker_failure(circuit_name: str, service: Optional[str] = None):
        circuit_breaker_failures.labels(
            service=service or MetricsCollector.SERVICE_NAME, circuit_name=circuit_name
        ).inc()
