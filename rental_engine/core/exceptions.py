from typing import Optional


class RentalEngineException(Exception):
    code = "RENTAL_ENGINE_ERROR"
    message = "Rental engine error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.message
        self.code = code or self.code
        super().__init__(self.message)


# --- NotFound ---


class NotFoundException(RentalEngineException):
    code = "NOT_FOUND"
    message = "Resource not found"


class UserNotFoundException(NotFoundException):
    code = "USER_NOT_FOUND"
    message = "User not found"


class DeviceNotFoundException(NotFoundException):
    code = "DEVICE_NOT_FOUND"
    message = "Device not found"


class StationNotFoundException(NotFoundException):
    code = "STATION_NOT_FOUND"
    message = "Station not found or not operational"


class RentalNotFoundException(NotFoundException):
    code = "RENTAL_NOT_FOUND"
    message = "Rental not found"


# --- Conflict ---


class ConflictException(RentalEngineException):
    code = "CONFLICT"
    message = "Conflicting state"


class DeviceUnavailableException(ConflictException):
    code = "DEVICE_UNAVAILABLE"
    message = "Device is not available for rental"


class StationMismatchException(ConflictException):
    code = "DEVICE_NOT_AT_STATION"
    message = "Device is not located at the specified station"


class StationFullException(ConflictException):
    code = "STATION_FULL"
    message = "Station has no free slot"


class AccountNotActiveException(ConflictException):
    code = "ACCOUNT_NOT_ACTIVE"
    message = "Account is not active"


class ActiveRentalExistsException(ConflictException):
    code = "ACTIVE_RENTAL_EXISTS"
    message = "User already has an active rental"


class RentalNotActiveException(ConflictException):
    code = "RENTAL_NOT_ACTIVE"
    message = "Rental is not active"


class CancellationWindowClosedException(ConflictException):
    code = "CANCELLATION_WINDOW_CLOSED"
    message = "Rental can no longer be cancelled"


class ConcurrentUpdateException(ConflictException):
    code = "CONCURRENT_UPDATE"
    message = "Record was modified by a concurrent request"


class SessionMismatchException(ConflictException):
    code = "SESSION_MISMATCH"
    message = "QR session does not match the scanned device or station"


# --- Validation ---


class ValidationException(RentalEngineException):
    code = "VALIDATION_ERROR"
    message = "Invalid request"


# --- Sessions ---


class ExpiredSessionException(RentalEngineException):
    code = "SESSION_EXPIRED"
    message = "QR code session expired or invalid"
