"""
OFFER / RESERVATION GUARD

Enforces at most one holding row per plot:
- offers in reserved/accepted
- listings in active
- agreements in active/completed

Callers must hold the plot lock so check and write are serialized.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from typing import Optional, Sequence
import logging

from landsales.core.errors import ConflictError
from landsales.core.statuses import OfferStatus, ListingStatus, AgreementStatus

logger = logging.getLogger(__name__)


class ReservationConflictError(ConflictError):
    """Raised when another row already holds the plot"""

    def __init__(self, entity_type: str, plot_id: str, existing_id: str, existing_status: str):
        super().__init__(
            error_type=f"ACTIVE_{entity_type.upper()}_EXISTS",
            message=f"Plot {plot_id} already has a {existing_status} {entity_type} ({existing_id})",
            details={
                "plot_id": plot_id,
                "existing_id": existing_id,
                "existing_status": existing_status
            }
        )


class ReservationGuard:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _ensure_none_holding(
        self,
        collection,
        entity_type: str,
        plot_id: str,
        statuses: Sequence[str],
        exclude_id: Optional[ObjectId],
        session=None
    ) -> None:
        query = {"plot_id": plot_id, "status": {"$in": list(statuses)}}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}

        existing = await collection.find_one(query, {"status": 1}, session=session)
        if existing:
            logger.warning(
                f"[GUARD] Blocked {entity_type} on plot {plot_id}: "
                f"{existing['_id']} is {existing['status']}"
            )
            raise ReservationConflictError(entity_type, plot_id, str(existing["_id"]), existing["status"])

    async def ensure_offer_can_hold(self, plot_id: str, exclude_id: Optional[ObjectId] = None, session=None):
        await self._ensure_none_holding(
            self.db.offers_reservations, "offer", plot_id, OfferStatus.HOLDING, exclude_id, session
        )

    async def ensure_listing_can_activate(self, plot_id: str, exclude_id: Optional[ObjectId] = None, session=None):
        await self._ensure_none_holding(
            self.db.listings, "listing", plot_id, ListingStatus.HOLDING, exclude_id, session
        )

    async def ensure_agreement_can_hold(self, plot_id: str, exclude_id: Optional[ObjectId] = None, session=None):
        await self._ensure_none_holding(
            self.db.sale_agreements, "agreement", plot_id, AgreementStatus.HOLDING, exclude_id, session
        )
