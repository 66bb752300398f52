from .device import DeviceRepository
from .rental import RentalRepository
from .station import StationRepository
from .user import UserRepository

__all__ = [
    "DeviceRepository",
    "RentalRepository",
    "StationRepository",
    "UserRepository",
]
