"""Error taxonomy shared by the ledger, storage policy and job lifecycle.

Every error carries a stable ``code`` string. Job records store the code of the
error that ended them, and the HTTP layer maps codes to status codes.
"""

from __future__ import annotations

from typing import Sequence


class StudioError(Exception):
    code = "STUDIO_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InsufficientCreditsError(StudioError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, balance: int) -> None:
        super().__init__(f"{required} credits required, {balance} available")
        self.required = required
        self.balance = balance


class ReservationNotFoundError(StudioError):
    code = "RESERVATION_NOT_FOUND"

    def __init__(self, reserved_id: str, job_id: str) -> None:
        super().__init__(f"no reservation {reserved_id} for job {job_id}")
        self.reserved_id = reserved_id
        self.job_id = job_id


class ReservationClosedError(StudioError):
    code = "RESERVATION_CLOSED"

    def __init__(self, reserved_id: str, status: str) -> None:
        super().__init__(f"reservation {reserved_id} is already {status}")
        self.reserved_id = reserved_id
        self.status = status


class AlreadyConfirmedError(ReservationClosedError):
    code = "ALREADY_CONFIRMED"


class AlreadyRefundedError(ReservationClosedError):
    code = "ALREADY_REFUNDED"


class FreeTrialUnavailableError(StudioError):
    code = "FREE_TRIAL_UNAVAILABLE"


class StorageWriteError(StudioError):
    code = "STORAGE_WRITE_FAILED"


class SttFailure(StudioError):
    code = "STT_FAILED"


class TranslationFailure(StudioError):
    code = "TRANSLATION_FAILED"

    def __init__(self, languages: Sequence[str], total: bool, message: str | None = None) -> None:
        super().__init__(message or f"translation failed for {', '.join(languages)}")
        self.languages = list(languages)
        self.total = total


class JobCancelledError(StudioError):
    code = "USER_CANCELLED"


class JobTimeoutError(StudioError):
    code = "TIMEOUT"


class JobNotFoundError(StudioError):
    code = "JOB_NOT_FOUND"


class JobStateError(StudioError):
    code = "INVALID_JOB_STATE"


class UnknownProcessingError(StudioError):
    code = "PROCESSING_ERROR"
