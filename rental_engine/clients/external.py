from typing import Optional, Tuple

import requests
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from rental_engine.config.settings import Settings
from rental_engine.core.circuit_breaker import BreakerPolicy, BreakerRegistry
from rental_engine.core.utils import json_dumps


class NotificationKind:
    RENTAL_CONFIRMATION = "rental_confirmation"
    RENTAL_EXTENDED = "rental_extended"
    PAYMENT_RECEIPT = "payment_receipt"
    LOST_REPORT = "lost_report"
    RENTAL_CANCELLED = "rental_cancelled"


class NotificationClient:
    """Posts user notifications to the SMS/notification service.

    Callers treat it as fire-and-forget: `send` never raises, it reports
    success and the error text instead.
    """

    def __init__(self, settings: Settings):
        self._session = self._build_session()
        self._timeout = settings.http_timeout_sec
        self._base = settings.notification_base

        self._breakers = BreakerRegistry()
        self._breaker = self._breakers.breaker_for(BreakerPolicy.notifications(settings))

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retries = Retry(
            total=3,
            connect=3,
            read=3,
            backoff_factor=0.3,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset({"POST"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update(
            {"User-Agent": "rental-engine/1.0", "Content-Type": "application/json"}
        )
        return session

    def _url(self, path: str) -> str:
        return f"{self._base.rstrip('/')}/{path.lstrip('/')}"

    def _post(self, path: str, payload: dict) -> dict:
        response = self._session.post(
            self._url(path), data=json_dumps(payload), timeout=self._timeout
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    def send(
        self, kind: str, user_id: str, payload: dict
    ) -> Tuple[bool, Optional[str]]:
        @self._breaker
        def _send():
            self._post("/notifications", {"kind": kind, "user_id": user_id, **payload})
            logger.debug(f"Notification {kind} sent to user {user_id}")
            return True, None

        try:
            return _send()
        except Exception as e:
            error_msg = str(e)
            logger.warning(
                f"Failed to send {kind} notification to user {user_id}: {error_msg}"
            )
            return False, error_msg

    def get_circuit_breaker_stats(self):
        return self._breakers.snapshot()
