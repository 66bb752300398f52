from typing import Optional

from loguru import logger
from sqlalchemy.engine import Engine

from rental_engine.clients.external import NotificationClient
from rental_engine.config.logging import setup_logging
from rental_engine.config.settings import Settings, get_settings
from rental_engine.db.database import get_engine, get_sessionmaker
from rental_engine.db.models import Base
from rental_engine.monitoring.metrics import init_app_info, start_metrics_server
from rental_engine.services.coordinator import RentalCoordinator
from rental_engine.services.qr_session import (
    InMemorySessionStore,
    QRSessionManager,
    RedisSessionStore,
)


def create_session_store(settings: Settings):
    if settings.redis_url:
        return RedisSessionStore.from_url(settings.redis_url)

    logger.warning("REDIS_URL is empty, QR sessions are kept in process memory")
    return InMemorySessionStore(
        maxsize=settings.qr_session_cache_size, ttl_sec=settings.qr_session_ttl_sec
    )


def create_coordinator(settings: Settings) -> RentalCoordinator:
    qr_manager = QRSessionManager(create_session_store(settings), settings)
    return RentalCoordinator(
        get_sessionmaker(settings.database_url),
        qr_manager,
        settings,
        notifier=NotificationClient(settings),
    )


def bootstrap(settings: Optional[Settings] = None) -> RentalCoordinator:
    """Wire logging, metrics and the coordinator for a host process."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, serialize=settings.log_json)
    init_app_info("1.0.0")

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
        logger.info(f"Metrics exposed on :{settings.metrics_port}")

    logger.info("Starting rental-engine")
    return create_coordinator(settings)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.info("Database schema is up to date")


def main():
    settings = get_settings()
    setup_logging(settings.log_level, serialize=settings.log_json)
    init_db(get_engine(settings.database_url))


if __name__ == "__main__":
    main()
