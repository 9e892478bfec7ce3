"""
TRANSACTION MANAGER

Provides:
1. One MongoDB multi-document transaction per command
2. SELECT ... FOR UPDATE style locking on aggregate roots (lock_version bump)
3. Store write conflicts surfaced as retryable ConflictError
4. Bounded retry with exponential backoff
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable
from bson import ObjectId
from bson.errors import InvalidId
import asyncio
import logging

from landsales.core.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

TRANSIENT_LABEL = "TransientTransactionError"


def to_object_id(entity_type: str, value: Any) -> ObjectId:
    """Parse an id, raising NotFoundError for malformed values"""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(entity_type, value)


async def lock_document(collection, entity_type: str, entity_id: Any, session=None) -> dict:
    """
    Take a write lock on a document inside the current transaction.

    Bumps lock_version so any concurrent transaction writing the same
    document hits a write conflict. Returns the locked document.
    """
    doc = await collection.find_one_and_update(
        {"_id": to_object_id(entity_type, entity_id)},
        {
            "$inc": {"lock_version": 1},
            "$set": {"locked_at": datetime.utcnow()}
        },
        return_document=ReturnDocument.AFTER,
        session=session
    )
    if not doc:
        raise NotFoundError(entity_type, entity_id)
    return doc


class MongoTransactionManager:
    """
    Runs engine commands inside MongoDB transactions.

    Usage:
        async def operation(session):
            ...
        result = await transactions.run(operation, "ACCEPT_OFFER")
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        max_retries: int = 3,
        retry_delay_ms: int = 50
    ):
        self.client = client
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    @asynccontextmanager
    async def transaction(self):
        """Open a session and transaction; commit on clean exit, abort on error"""
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except DuplicateKeyError as e:
            raise ConflictError(
                error_type="DUPLICATE_KEY",
                message=f"Unique constraint violated: {e}",
                details={"key": str(getattr(e, "details", None))},
                retryable=True
            )
        except OperationFailure as e:
            if e.has_error_label(TRANSIENT_LABEL):
                raise ConflictError(
                    error_type="WRITE_CONFLICT",
                    message=f"Concurrent write conflict: {e}",
                    details={"code": e.code},
                    retryable=True
                )
            raise

    async def run(
        self,
        operation: Callable[[Any], Awaitable[Any]],
        label: str = "COMMAND"
    ) -> Any:
        """
        Execute operation(session) in a transaction.

        Retryable conflicts are retried up to max_retries times with
        exponential backoff, then surfaced to the caller.
        """
        attempt = 0
        while True:
            try:
                async with self.transaction() as session:
                    result = await operation(session)
                logger.debug(f"[TRANSACTION] Committed {label}")
                return result
            except ConflictError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay_ms * (2 ** attempt) / 1000
                attempt += 1
                logger.warning(
                    f"[TRANSACTION] {label} conflict ({e.error_type}), "
                    f"retry {attempt}/{self.max_retries} in {delay}s"
                )
                await asyncio.sleep(delay)
