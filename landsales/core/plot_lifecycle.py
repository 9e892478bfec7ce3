"""
PLOT LIFECYCLE

Plot stage is never set from a single event. After any offer or agreement
write, the stage is re-derived from every offer and agreement on the plot:

    any settled agreement                      -> transferred
    any draft/active/completed/defaulted agmt  -> sold
    any reserved/accepted offer                -> reserved
    otherwise reserved/sold fall back          -> ready_for_sale
    raw/surveyed/ready_for_sale are kept
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Iterable, Optional
import logging

from landsales.core.statuses import PlotStage, OfferStatus, AgreementStatus
from landsales.core.transactions import lock_document

logger = logging.getLogger(__name__)


def derive_plot_stage(
    current_stage: str,
    offer_statuses: Iterable[str],
    agreement_statuses: Iterable[str]
) -> str:
    agreement_statuses = set(agreement_statuses)
    offer_statuses = set(offer_statuses)

    if AgreementStatus.SETTLED in agreement_statuses:
        return PlotStage.TRANSFERRED
    if agreement_statuses & set(AgreementStatus.LIVE):
        return PlotStage.SOLD
    if offer_statuses & set(OfferStatus.HOLDING):
        return PlotStage.RESERVED
    if current_stage in (PlotStage.RESERVED, PlotStage.SOLD):
        return PlotStage.READY_FOR_SALE
    return current_stage


class PlotLifecycle:
    """Owns writes to plots.stage driven by offers and agreements"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def lock_plot(self, plot_id, session=None) -> dict:
        return await lock_document(self.db.plots, "Plot", plot_id, session=session)

    async def rederive_stage(self, plot_id, session=None, plot: Optional[dict] = None) -> str:
        """Recompute and persist the stage of a plot. Returns the new stage."""
        if plot is None:
            plot = await self.lock_plot(plot_id, session=session)

        plot_key = str(plot["_id"])
        offer_statuses = [
            o["status"] async for o in self.db.offers_reservations.find(
                {"plot_id": plot_key}, {"status": 1}, session=session
            )
        ]
        agreement_statuses = [
            a["status"] async for a in self.db.sale_agreements.find(
                {"plot_id": plot_key}, {"status": 1}, session=session
            )
        ]

        current = plot["stage"]
        new_stage = derive_plot_stage(current, offer_statuses, agreement_statuses)

        if new_stage != current:
            await self.db.plots.update_one(
                {"_id": plot["_id"]},
                {
                    "$set": {
                        "stage": new_stage,
                        "stage_changed_at": datetime.utcnow(),
                        "updated_at": datetime.utcnow()
                    }
                },
                session=session
            )
            logger.info(f"[PLOT_LIFECYCLE] Plot {plot_key}: {current} -> {new_stage}")

        return new_stage
