from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    BAD_REQUEST = 'BAD_REQUEST'
    NOT_FOUND = 'NOT_FOUND'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    CONFLICT = 'CONFLICT'
    INTERNAL_ERROR = 'INTERNAL_ERROR'


HTTP_STATUS = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


@dataclass(frozen=True)
class SerialError:
    """Why one serial of a request could not be moved."""

    serial: str
    reason: str
    stage: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class TrackingStoreError(Exception):
    """The persistence layer failed; nothing from the operation was committed."""


class ConcurrentUpdateError(TrackingStoreError):
    def __init__(self, serials):
        self.serials = list(serials)
        super().__init__(
            'Tracking records changed while the operation was running: '
            + ', '.join(self.serials)
        )


class InvalidTransition(Exception):
    def __init__(self, error: SerialError):
        self.error = error
        super().__init__(f'{error.serial}: {error.reason}')
