from __future__ import annotations


class DoseTrackingError(Exception):
    """Base class for recoverable dose-tracking failures."""


class InvalidRegimen(DoseTrackingError):
    """Raised when a regimen's dose spec, frequency, timing or dates are inconsistent."""


class DuplicateMedicine(DoseTrackingError):
    """Raised when a user already has a current medicine with the same name."""


class MedicineNotFound(DoseTrackingError):
    pass


class LogNotFound(DoseTrackingError):
    pass


class AlreadyTaken(DoseTrackingError):
    """Raised when a dose log is no longer pending. The log is left unchanged."""

    def __init__(self, log_id: int, status: str):
        super().__init__(f"Dose log {log_id} is already {status}")
        self.log_id = log_id
        self.status = status


class PersistenceFailure(DoseTrackingError):
    """Storage error. Materialization is idempotent, so retry the whole pass."""


HTTP_STATUS_CODES: dict[type[DoseTrackingError], int] = {
    InvalidRegimen: 400,
    DuplicateMedicine: 409,
    MedicineNotFound: 404,
    LogNotFound: 404,
    AlreadyTaken: 409,
    PersistenceFailure: 503,
}


def http_status_for(exc: DoseTrackingError) -> int:
    for cls in type(exc).__mro__:
        if cls in HTTP_STATUS_CODES:
            return HTTP_STATUS_CODES[cls]
    return 400
