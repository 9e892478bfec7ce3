"""
ATOMIC DOCUMENT NUMBERING

Provides:
1. Per-(prefix, year) counter documents incremented with $inc
2. PREFIX-YYYY-NNNN identifiers (AGR 4 digits, RCP/INV 6 digits)
3. Uniqueness check against the target collection
4. Bounded collision retry
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
from typing import Tuple
import logging
import asyncio

from landsales.core.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


class SequenceCollisionError(ConflictError):
    """Raised when a unique number cannot be produced after max retries"""

    def __init__(self, prefix: str, year: int, attempts: int):
        super().__init__(
            error_type="SEQUENCE_COLLISION",
            message=f"Failed to generate unique {prefix} number for {year} after {attempts} attempts",
            details={"prefix": prefix, "year": year, "attempts": attempts},
            retryable=True
        )


# prefix -> (target collection, number field, zero padding)
SEQUENCE_FORMATS = {
    "AGR": ("sale_agreements", "agreement_no", 4),
    "RCP": ("receipts", "receipt_no", 6),
    "INV": ("invoices", "invoice_no", 6),
}


def format_document_number(prefix: str, year: int, sequence: int) -> str:
    _, _, padding = SEQUENCE_FORMATS[prefix]
    return f"{prefix}-{year}-{sequence:0{padding}d}"


class SequenceGenerator:
    """
    Collision-free identifier generator.

    The counter document is written with $inc inside the caller's
    transaction, so concurrent callers serialize on it.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 10

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_next_sequence(self, prefix: str, year: int, session=None) -> int:
        """Increment-and-read the (prefix, year) counter. Returns the NEW value."""
        result = await self.db.sequence_counters.find_one_and_update(
            {"prefix": prefix, "year": year},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        return result["current_sequence"]

    async def generate(self, prefix: str, year: int, session=None) -> Tuple[str, int]:
        """
        Generate the next identifier for prefix in year.

        Returns:
            tuple: (document_number, sequence_number)

        Raises:
            SequenceCollisionError: If max retries exceeded
        """
        if prefix not in SEQUENCE_FORMATS:
            raise ValidationError(
                error_type="UNKNOWN_SEQUENCE_PREFIX",
                message=f"Unknown sequence prefix: {prefix}",
                details={"prefix": prefix}
            )

        collection_name, field, _ = SEQUENCE_FORMATS[prefix]
        collection = self.db[collection_name]

        for attempt in range(self.MAX_RETRIES):
            sequence = await self.get_next_sequence(prefix, year, session)
            document_number = format_document_number(prefix, year, sequence)

            # Legacy rows may already hold numbers past the counter
            existing = await collection.find_one({field: document_number}, {"_id": 1}, session=session)
            if not existing:
                logger.info(f"[SEQUENCE] Generated {document_number}")
                return document_number, sequence

            logger.warning(f"[SEQUENCE] Collision on {document_number}, retry {attempt + 1}")
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise SequenceCollisionError(prefix, year, self.MAX_RETRIES)

    async def create_unique_constraints(self):
        """Create unique indexes on generated numbers and the counter key"""
        try:
            for prefix, (collection_name, field, _) in SEQUENCE_FORMATS.items():
                await self.db[collection_name].create_index(
                    [(field, 1)],
                    unique=True,
                    name=f"unique_{field}"
                )

            await self.db.sequence_counters.create_index(
                [("prefix", 1), ("year", 1)],
                unique=True,
                name="unique_sequence_key"
            )

            logger.info("Created unique document number constraints")
        except Exception as e:
            logger.warning(f"Index creation result: {str(e)}")
