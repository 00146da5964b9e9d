"""
Typed rejections raised by the serial engine.

Every error carries a machine-readable ``kind`` (the class name), a
human-readable ``detail`` and the HTTP status the router answers with.
Availability and configuration errors are actionable by the caller;
``TransientError`` is the only retryable one.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SerialError(Exception):
    status_code = 400
    retryable = False
    default_detail = "request rejected"

    def __init__(self, detail: Optional[str] = None, **context: Any):
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "detail": self.detail}
        if self.retryable:
            out["retryable"] = True
        if self.context:
            out["context"] = self.context
        return out


# ---- Configuration ----
class ConfigurationError(SerialError):
    pass


class NotConfigured(ConfigurationError):
    status_code = 404
    default_detail = "serial settings not configured for this provider"


class InvalidTimeWindow(ConfigurationError):
    default_detail = "end time must be after start time"


class InvalidProviderKey(ConfigurationError):
    default_detail = "invalid provider key"


class InvalidConfiguration(ConfigurationError):
    default_detail = "invalid serial configuration"


# ---- Availability ----
class AvailabilityError(SerialError):
    status_code = 409


class BookingClosed(AvailabilityError):
    default_detail = "serial booking is not available for this date"


class SerialAlreadyBooked(AvailabilityError):
    default_detail = "this serial is already booked; choose another serial"


class SerialOutOfRange(AvailabilityError):
    status_code = 400
    default_detail = "serial number out of range"


class SerialMustBeEven(AvailabilityError):
    status_code = 400
    default_detail = "only even-numbered serials can be booked online"


class SerialMustBeOdd(AvailabilityError):
    status_code = 400
    default_detail = "staff-assigned serials must be odd"


class SlotWindowChanged(AvailabilityError):
    default_detail = "the time slot for this serial has changed; refresh available serials"


class IdempotencyKeyReused(AvailabilityError):
    default_detail = "Idempotency-Key reused with different parameters"


# ---- State machine ----
class StateError(SerialError):
    status_code = 409


class InvalidTransition(StateError):
    default_detail = "status transition not allowed"


class ReasonRequired(StateError):
    status_code = 400
    default_detail = "a reason is required for this transition"


class BookingNotFound(StateError):
    status_code = 404
    default_detail = "booking not found"


# ---- Store ----
class TransientError(SerialError):
    status_code = 503
    retryable = True
    default_detail = "storage temporarily unavailable; retry"
