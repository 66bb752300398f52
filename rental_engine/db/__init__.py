from .database import get_engine, get_sessionmaker
from .models import Base, Device, Rental, Station, User

__all__ = [
    "Base",
    "User",
    "Station",
    "Device",
    "Rental",
    "get_sessionmaker",
    "get_engine",
]
