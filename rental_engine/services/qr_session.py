import base64
import io
import json
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Optional

import qrcode
import redis
from cachetools import TTLCache
from loguru import logger

from rental_engine.config.settings import Settings
from rental_engine.core.exceptions import (
    ExpiredSessionException,
    SessionMismatchException,
    ValidationException,
)
from rental_engine.core.utils import ensure_utc, generate_session_id, json_dumps, utcnow
from rental_engine.monitoring.metrics import MetricsCollector
from rental_engine.schemas import QRCodeTicket, QRScanResult, QRSession
from rental_engine.services.inventory import InventoryLedger


class QRPurpose:
    START = "start"
    RETURN = "return"


ACTIONS = {
    QRPurpose.START: "START_RENTAL",
    QRPurpose.RETURN: "RETURN_DEVICE",
}


class RedisSessionStore:
    _PREFIX = "qr_session:"

    def __init__(self, client: redis.Redis):
        self._r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _key(self, session_id: str) -> str:
        return f"{self._PREFIX}{session_id}"

    def put(self, session_id: str, payload: str, ttl_sec: int) -> None:
        self._r.setex(self._key(session_id), ttl_sec, payload)

    def get(self, session_id: str) -> Optional[str]:
        return self._r.get(self._key(session_id))

    def delete(self, session_id: str) -> bool:
        return bool(self._r.delete(self._key(session_id)))

    def keys(self) -> list:
        return [
            key[len(self._PREFIX):]
            for key in self._r.scan_iter(match=f"{self._PREFIX}*")
        ]


class InMemorySessionStore:
    """Single-process store; entries vanish after the cache TTL."""

    def __init__(self, maxsize: int, ttl_sec: int):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl_sec)
        self._lock = RLock()

    def put(self, session_id: str, payload: str, ttl_sec: int) -> None:  # noqa: ARG002
        with self._lock:
            self._cache[session_id] = payload

    def get(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(session_id)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._cache.pop(session_id, None) is not None

    def keys(self) -> list:
        with self._lock:
            return list(self._cache.keys())


class QRSessionManager:
    def __init__(
        self,
        store,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl_sec = settings.qr_session_ttl_sec
        self.clock = clock

    def issue(
        self,
        device_id: str,
        station_id: str,
        user_id: str,
        purpose: str = QRPurpose.START,
        ledger: Optional[InventoryLedger] = None,
    ) -> QRSession:
        if purpose not in ACTIONS:
            raise ValidationException(f"Unknown QR purpose: {purpose}")

        if ledger is not None:
            # both raise NotFound for unknown identifiers
            ledger.get_device(device_id)
            ledger.get_station(station_id)

        now = self.clock()
        session = QRSession(
            session_id=generate_session_id(),
            device_id=device_id,
            station_id=station_id,
            user_id=user_id,
            purpose=purpose,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_sec),
        )
        self.store.put(session.session_id, self.payload(session), self.ttl_sec)
        MetricsCollector.record_qr_session(purpose, "issued")

        logger.info(
            f"QR session issued: purpose={purpose}, device={device_id}, "
            f"station={station_id}, user={user_id}"
        )
        return session

    def validate(
        self,
        session_id: str,
        observed_device_id: Optional[str] = None,
        observed_station_id: Optional[str] = None,
    ) -> QRSession:
        raw = self.store.get(session_id)
        if not raw:
            MetricsCollector.record_qr_session("unknown", "expired")
            raise ExpiredSessionException()

        session = QRSession(**json.loads(raw))
        if self.clock() > ensure_utc(session.expires_at):
            self.store.delete(session_id)
            MetricsCollector.record_qr_session(session.purpose, "expired")
            raise ExpiredSessionException("QR code session has expired")

        if observed_device_id and observed_device_id != session.device_id:
            MetricsCollector.record_qr_session(session.purpose, "mismatch")
            raise SessionMismatchException("Device mismatch", code="DEVICE_MISMATCH")
        if observed_station_id and observed_station_id != session.station_id:
            MetricsCollector.record_qr_session(session.purpose, "mismatch")
            raise SessionMismatchException("Station mismatch", code="STATION_MISMATCH")

        MetricsCollector.record_qr_session(session.purpose, "validated")
        return session

    def invalidate(self, session_id: str) -> bool:
        removed = self.store.delete(session_id)
        logger.info(f"QR session invalidated: removed={removed}")
        return removed

    def resolve_scan(
        self,
        raw: str,
        observed_device_id: Optional[str] = None,
        observed_station_id: Optional[str] = None,
    ) -> QRScanResult:
        """Accept either the JSON payload printed in the QR image or a bare session id."""
        try:
            session_id = json.loads(raw)["session_id"]
        except (ValueError, TypeError, KeyError):
            session_id = raw.strip()

        session = self.validate(session_id, observed_device_id, observed_station_id)
        return QRScanResult(action=ACTIONS[session.purpose], session=session)

    @staticmethod
    def payload(session: QRSession) -> str:
        return json_dumps(session.model_dump())

    @classmethod
    def render_image(cls, session: QRSession) -> str:
        """Render the session payload as a PNG data URL for a kiosk screen."""
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=2,
        )
        qr.add_data(cls.payload(session))
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        img_str = base64.b64encode(buffer.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"

    def ticket(self, session: QRSession) -> QRCodeTicket:
        return QRCodeTicket(session=session, image_data_url=self.render_image(session))

    def active_sessions_count(self) -> int:
        return len(self.store.keys())

    def cleanup_expired(self) -> int:
        now = self.clock()
        cleaned = 0
        for session_id in self.store.keys():
            raw = self.store.get(session_id)
            if not raw:
                continue
            if now > ensure_utc(QRSession(**json.loads(raw)).expires_at):
                self.store.delete(session_id)
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired QR sessions")
        return cleaned
