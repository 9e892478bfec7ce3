"""
LAND INVARIANT VALIDATOR

Enforces cross-row constraints before a write is committed:
1. sum(active ownership_percentage) per parcel <= 100.00
2. sum(plot size_sqm) / 10000 <= saleable_area_ha * 1.05 per subdivision
3. total_plots_created <= total_plots_planned

Callers hold the aggregate root lock (parcel / subdivision).
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from bson import ObjectId
from typing import Optional
import logging

from landsales.core.errors import ValidationError
from landsales.core.financial_precision import (
    to_decimal, round_financial, round_area, sqm_to_hectares, safe_add
)

logger = logging.getLogger(__name__)

MAX_OWNERSHIP_PERCENTAGE = Decimal('100.00')
AREA_TOLERANCE = Decimal('1.05')


class InvariantViolationError(ValidationError):
    """Raised when a land invariant is violated"""
    pass


class LandInvariantValidator:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def validate_ownership_total(
        self,
        parcel_id: str,
        new_percentage,
        is_active: bool = True,
        exclude_link_id: Optional[ObjectId] = None,
        session=None
    ) -> Decimal:
        """
        Sum the other active ownership links on the parcel and add the
        incoming value (only when the incoming link is active).

        Returns the resulting total. Raises InvariantViolationError if > 100.
        """
        query = {"parcel_id": parcel_id, "is_active": True}
        if exclude_link_id is not None:
            query["_id"] = {"$ne": exclude_link_id}

        total = Decimal('0')
        async for link in self.db.parcel_owners.find(query, {"ownership_percentage": 1}, session=session):
            total += to_decimal(link["ownership_percentage"])

        if is_active:
            total = safe_add(total, new_percentage)
        total = round_financial(total)

        if total > MAX_OWNERSHIP_PERCENTAGE:
            raise InvariantViolationError(
                error_type="OWNERSHIP_EXCEEDS_100",
                message=f"Total ownership for parcel {parcel_id} would be {total}% (max 100%)",
                details={
                    "parcel_id": parcel_id,
                    "total_percentage": float(total),
                    "new_percentage": float(to_decimal(new_percentage))
                }
            )

        logger.info(f"[INVARIANT] Ownership for parcel {parcel_id}: {total}%")
        return total

    async def validate_subdivision_area(
        self,
        subdivision: dict,
        new_size_sqm,
        exclude_plot_id: Optional[ObjectId] = None,
        session=None
    ) -> Optional[Decimal]:
        """
        Sum the other plots of the subdivision (in hectares) and add the
        incoming plot. Subdivisions without saleable_area_ha are unchecked.

        Returns the resulting total in hectares.
        """
        saleable_area = subdivision.get("saleable_area_ha")
        if saleable_area is None:
            return None

        subdivision_id = str(subdivision["_id"])
        query = {"subdivision_id": subdivision_id}
        if exclude_plot_id is not None:
            query["_id"] = {"$ne": exclude_plot_id}

        total_sqm = to_decimal(new_size_sqm)
        async for plot in self.db.plots.find(query, {"size_sqm": 1}, session=session):
            total_sqm += to_decimal(plot["size_sqm"])

        total_ha = sqm_to_hectares(total_sqm)
        limit_ha = to_decimal(saleable_area) * AREA_TOLERANCE

        if total_ha > limit_ha:
            raise InvariantViolationError(
                error_type="AREA_BUDGET_EXCEEDED",
                message=(
                    f"Total plot area {round_area(total_ha)} ha exceeds subdivision "
                    f"saleable area {saleable_area} ha (+5% tolerance)"
                ),
                details={
                    "subdivision_id": subdivision_id,
                    "total_area_ha": float(round_area(total_ha)),
                    "saleable_area_ha": float(to_decimal(saleable_area)),
                    "limit_ha": float(round_area(limit_ha))
                }
            )

        return total_ha

    def validate_plot_capacity(self, subdivision: dict) -> None:
        """Reject a new plot once total_plots_planned is reached"""
        created = subdivision.get("total_plots_created", 0)
        planned = subdivision["total_plots_planned"]
        if created + 1 > planned:
            raise InvariantViolationError(
                error_type="PLOT_COUNT_EXCEEDED",
                message=f"Subdivision {subdivision['_id']} already has {created} of {planned} planned plots",
                details={
                    "subdivision_id": str(subdivision["_id"]),
                    "total_plots_created": created,
                    "total_plots_planned": planned
                }
            )
