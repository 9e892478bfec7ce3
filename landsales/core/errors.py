"""
ENGINE ERROR TAXONOMY

Provides:
1. ValidationError - business invariant violated, never retried
2. ConflictError - contention or stage violation (retryable only for store write conflicts)
3. NotFoundError - referenced entity missing
4. ConsistencyError - post-write invariant broken, fatal
5. HTTP translation for API callers
"""

from fastapi import HTTPException, status
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class LandSalesError(Exception):
    """Base class for every error raised by the engine"""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.error_type = error_type
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "details": self.details
        }


class ValidationError(LandSalesError):
    """Raised when a command would violate a business invariant"""
    http_status = status.HTTP_400_BAD_REQUEST


class ConflictError(LandSalesError):
    """Raised on contention or when the current lifecycle stage forbids the command"""
    http_status = status.HTTP_409_CONFLICT

    def __init__(
        self,
        error_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False
    ):
        self.retryable = retryable
        super().__init__(error_type, message, details)


class NotFoundError(LandSalesError):
    """Raised when a referenced entity does not exist"""
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            error_type="NOT_FOUND",
            message=f"{entity_type} not found: {entity_id}",
            details={"entity_type": entity_type, "entity_id": str(entity_id)}
        )


class ConsistencyError(LandSalesError):
    """Raised when an internal invariant is broken after a write that passed pre-checks"""
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: LandSalesError) -> HTTPException:
    """Map an engine error onto the HTTP response an API layer should return"""
    if isinstance(error, ConsistencyError):
        logger.error(f"[CONSISTENCY] {error.error_type}: {error.message} {error.details}")
    return HTTPException(
        status_code=error.http_status,
        detail=error.to_dict()
    )
