"""
STATE MACHINE WIRING

Defines the status machines and wires the cascades into their handlers.

Entities:
- Plot (manual stages): raw → surveyed → ready_for_sale
- Listing: draft → active → withdrawn / expired / sold
- Offer: draft → reserved → accepted, closing to declined / expired / cancelled
- SaleAgreement: draft → active → completed → settled, plus cancelled / defaulted

Every handler runs inside the caller's transaction with the plot locked
(context["plot"]). Offer and agreement handlers finish by re-deriving the
plot stage.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Tuple
import logging

from landsales.core.state_machine import StateMachine
from landsales.core.statuses import (
    PlotStage, ListingStatus, OfferStatus, AgreementStatus
)
from landsales.core.plot_lifecycle import PlotLifecycle
from landsales.core.reservation_guard import ReservationGuard
from landsales.core.commission_engine import CommissionEngine
from landsales.core.dates import to_storage_datetime
from landsales.core.transactions import to_object_id

logger = logging.getLogger(__name__)

# Plot stages in which a plot can be offered or listed
SELLABLE_STAGES = (PlotStage.READY_FOR_SALE, PlotStage.RESERVED)


# =============================================================================
# PLOT (MANUAL STAGES)
# =============================================================================

def create_plot_state_machine(db: AsyncIOMotorDatabase) -> StateMachine:
    """States: raw → surveyed → ready_for_sale"""
    machine = StateMachine("plot", status_field="stage")

    async def handle_raw_to_surveyed(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(PlotStage.SURVEYED)
        update["survey_plan_ref"] = context.get("survey_plan_ref") or entity.get("survey_plan_ref")
        update["surveyed_at"] = datetime.utcnow()
        await db.plots.update_one({"_id": entity["_id"]}, {"$set": update}, session=session)
        return update

    async def handle_surveyed_to_ready(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(PlotStage.READY_FOR_SALE)
        await db.plots.update_one({"_id": entity["_id"]}, {"$set": update}, session=session)
        return update

    machine.register(PlotStage.RAW, PlotStage.SURVEYED, handle_raw_to_surveyed,
                     description="Survey completed")
    machine.register(PlotStage.SURVEYED, PlotStage.READY_FOR_SALE, handle_surveyed_to_ready,
                     description="Released for sale")

    return machine


# =============================================================================
# LISTING
# =============================================================================

def create_listing_state_machine(db: AsyncIOMotorDatabase, guard: ReservationGuard) -> StateMachine:
    machine = StateMachine("listing")

    async def guard_can_activate(entity: Dict, context: Dict, session) -> Tuple[bool, str]:
        plot = context["plot"]
        if plot["stage"] not in SELLABLE_STAGES:
            return (False, f"Plot is {plot['stage']}")
        await guard.ensure_listing_can_activate(entity["plot_id"], exclude_id=entity["_id"], session=session)
        return (True, "")

    def simple_handler(to_state: str, extra: Dict = None):
        async def handler(entity: Dict, context: Dict, session) -> Dict:
            update = machine.get_status_update(to_state)
            update.update(extra or {})
            await db.listings.update_one({"_id": entity["_id"]}, {"$set": update}, session=session)
            return update
        return handler

    machine.register(ListingStatus.DRAFT, ListingStatus.ACTIVE,
                     simple_handler(ListingStatus.ACTIVE), guard=guard_can_activate,
                     description="Publish listing")
    machine.register(ListingStatus.DRAFT, ListingStatus.WITHDRAWN,
                     simple_handler(ListingStatus.WITHDRAWN), description="Withdraw unpublished")
    machine.register(ListingStatus.ACTIVE, ListingStatus.WITHDRAWN,
                     simple_handler(ListingStatus.WITHDRAWN), description="Withdraw listing")
    machine.register(ListingStatus.ACTIVE, ListingStatus.EXPIRED,
                     simple_handler(ListingStatus.EXPIRED), description="Listing lapsed")
    machine.register(ListingStatus.ACTIVE, ListingStatus.SOLD,
                     simple_handler(ListingStatus.SOLD), description="Plot transferred")

    return machine


# =============================================================================
# OFFER
# =============================================================================

def create_offer_state_machine(
    db: AsyncIOMotorDatabase,
    guard: ReservationGuard,
    plot_lifecycle: PlotLifecycle
) -> StateMachine:
    machine = StateMachine("offer")

    async def guard_can_hold(entity: Dict, context: Dict, session) -> Tuple[bool, str]:
        """Offer may reserve/accept only a sellable plot nobody else holds"""
        plot = context["plot"]
        if plot["stage"] not in SELLABLE_STAGES:
            return (False, f"Plot is {plot['stage']}")
        await guard.ensure_offer_can_hold(entity["plot_id"], exclude_id=entity["_id"], session=session)
        return (True, "")

    def offer_handler(to_state: str):
        async def handler(entity: Dict, context: Dict, session) -> Dict:
            update = machine.get_status_update(to_state)
            if to_state == OfferStatus.ACCEPTED:
                update["accepted_at"] = datetime.utcnow()
            elif to_state in OfferStatus.CLOSED:
                update["closed_reason"] = context.get("reason")

            await db.offers_reservations.update_one(
                {"_id": entity["_id"]}, {"$set": update}, session=session
            )
            update["plot_stage"] = await plot_lifecycle.rederive_stage(
                entity["plot_id"], session=session, plot=context["plot"]
            )
            return update
        return handler

    machine.register(OfferStatus.DRAFT, OfferStatus.RESERVED,
                     offer_handler(OfferStatus.RESERVED), guard=guard_can_hold,
                     description="Reservation fee taken")
    machine.register(OfferStatus.DRAFT, OfferStatus.ACCEPTED,
                     offer_handler(OfferStatus.ACCEPTED), guard=guard_can_hold,
                     description="Accept offer")
    machine.register(OfferStatus.RESERVED, OfferStatus.ACCEPTED,
                     offer_handler(OfferStatus.ACCEPTED), guard=guard_can_hold,
                     description="Accept reserved offer")

    for from_state in (OfferStatus.DRAFT, OfferStatus.RESERVED):
        machine.register(from_state, OfferStatus.DECLINED, offer_handler(OfferStatus.DECLINED))
        machine.register(from_state, OfferStatus.EXPIRED, offer_handler(OfferStatus.EXPIRED))
    for from_state in (OfferStatus.DRAFT, OfferStatus.RESERVED, OfferStatus.ACCEPTED):
        machine.register(from_state, OfferStatus.CANCELLED, offer_handler(OfferStatus.CANCELLED))

    return machine


# =============================================================================
# SALE AGREEMENT
# =============================================================================

def create_agreement_state_machine(
    db: AsyncIOMotorDatabase,
    guard: ReservationGuard,
    plot_lifecycle: PlotLifecycle,
    commission_engine: CommissionEngine
) -> StateMachine:
    machine = StateMachine("sale_agreement")

    async def guard_can_activate(entity: Dict, context: Dict, session) -> Tuple[bool, str]:
        await guard.ensure_agreement_can_hold(entity["plot_id"], exclude_id=entity["_id"], session=session)
        return (True, "")

    async def guard_fully_paid(entity: Dict, context: Dict, session) -> Tuple[bool, str]:
        if float(entity.get("balance_due", 0)) > 0:
            return (False, f"Balance due {entity['balance_due']} is outstanding")
        return (True, "")

    async def _write(entity: Dict, update: Dict, session) -> None:
        await db.sale_agreements.update_one({"_id": entity["_id"]}, {"$set": update}, session=session)

    async def handle_activate(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.ACTIVE)
        await _write(entity, update, session)
        commission = await commission_engine.ensure_commission(entity, session=session)
        update["commission_id"] = str(commission["_id"]) if commission else None
        update["plot_stage"] = await plot_lifecycle.rederive_stage(
            entity["plot_id"], session=session, plot=context["plot"]
        )
        return update

    async def handle_complete(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.COMPLETED)
        update["completion_date"] = to_storage_datetime(context["today"])
        await _write(entity, update, session)
        return update

    async def guard_balance_outstanding(entity: Dict, context: Dict, session) -> Tuple[bool, str]:
        if float(entity.get("balance_due", 0)) <= 0:
            return (False, "Agreement is fully paid")
        return (True, "")

    async def handle_reopen(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.ACTIVE)
        update["completion_date"] = None
        await _write(entity, update, session)
        return update

    async def handle_settle(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.SETTLED)
        update["title_transfer_date"] = to_storage_datetime(context.get("title_transfer_date") or context["today"])
        await _write(entity, update, session)

        await db.listings.update_many(
            {"plot_id": entity["plot_id"], "status": ListingStatus.ACTIVE},
            {"$set": {"status": ListingStatus.SOLD, "updated_at": datetime.utcnow()}},
            session=session
        )
        update["plot_stage"] = await plot_lifecycle.rederive_stage(
            entity["plot_id"], session=session, plot=context["plot"]
        )
        return update

    async def _close_converted_offer(entity: Dict, context: Dict, session) -> bool:
        """The offer an agreement was drawn from stops holding the plot with it"""
        if not entity.get("offer_id"):
            return False
        now = datetime.utcnow()
        result = await db.offers_reservations.update_one(
            {
                "_id": to_object_id("Offer", entity["offer_id"]),
                "status": {"$in": list(OfferStatus.HOLDING)}
            },
            {"$set": {
                "status": OfferStatus.CANCELLED,
                "status_changed_at": now,
                "updated_at": now,
                "closed_reason": context.get("reason") or "agreement cancelled"
            }},
            session=session
        )
        return result.modified_count == 1

    async def handle_cancel(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.CANCELLED)
        update["cancellation_reason"] = context.get("reason")
        await _write(entity, update, session)
        update["commissions_cancelled"] = await commission_engine.cancel_pending(str(entity["_id"]), session=session)
        update["offer_closed"] = await _close_converted_offer(entity, context, session)
        update["plot_stage"] = await plot_lifecycle.rederive_stage(
            entity["plot_id"], session=session, plot=context["plot"]
        )
        return update

    async def handle_default(entity: Dict, context: Dict, session) -> Dict:
        update = machine.get_status_update(AgreementStatus.DEFAULTED)
        await _write(entity, update, session)
        return update

    machine.register(AgreementStatus.DRAFT, AgreementStatus.ACTIVE, handle_activate,
                     guard=guard_can_activate, description="Agreement signed")
    machine.register(AgreementStatus.ACTIVE, AgreementStatus.COMPLETED, handle_complete,
                     guard=guard_fully_paid, description="Fully paid")
    machine.register(AgreementStatus.COMPLETED, AgreementStatus.ACTIVE, handle_reopen,
                     guard=guard_balance_outstanding, description="Receipt reversed")
    machine.register(AgreementStatus.COMPLETED, AgreementStatus.SETTLED, handle_settle,
                     guard=guard_fully_paid, description="Title transferred")
    machine.register(AgreementStatus.ACTIVE, AgreementStatus.DEFAULTED, handle_default,
                     description="Buyer defaulted")
    for from_state in AgreementStatus.LIVE:
        machine.register(from_state, AgreementStatus.CANCELLED, handle_cancel,
                         description="Agreement cancelled")

    return machine


# =============================================================================
# STATE MACHINE FACTORY
# =============================================================================

class EntityStateMachines:
    """Builds and holds the state machines for one database."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        guard: ReservationGuard,
        plot_lifecycle: PlotLifecycle,
        commission_engine: CommissionEngine
    ):
        self.plot = create_plot_state_machine(db)
        self.listing = create_listing_state_machine(db, guard)
        self.offer = create_offer_state_machine(db, guard, plot_lifecycle)
        self.agreement = create_agreement_state_machine(db, guard, plot_lifecycle, commission_engine)

    def get_all_machines(self) -> Dict[str, StateMachine]:
        return {
            "plot": self.plot,
            "listing": self.listing,
            "offer": self.offer,
            "sale_agreement": self.agreement
        }
