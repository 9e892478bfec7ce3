"""
SALES ENGINE

Implements:
1. Listings (create, activate, withdraw)
2. Offers / reservations (create, reserve, accept, decline, cancel, expire)
3. Sale agreements (create, activate, settle, cancel, default)
4. Payment plans

ALL commands wrapped in MongoDB transactions with the plot locked.
Plot stage is re-derived inside the same transaction after every
offer or agreement status change.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional
import logging

from landsales.models import ListingCreate, OfferCreate, SaleAgreementCreate, PaymentPlanCreate
from landsales.audit_service import AuditService
from landsales.serialization import serialize_doc, to_storage
from landsales.core.errors import ValidationError, ConflictError, NotFoundError
from landsales.core.transactions import MongoTransactionManager, lock_document, to_object_id
from landsales.core.atomic_numbering import SequenceGenerator
from landsales.core.plot_lifecycle import PlotLifecycle
from landsales.core.reservation_guard import ReservationGuard
from landsales.core.commission_engine import CommissionEngine
from landsales.core.state_machine_wiring import EntityStateMachines, SELLABLE_STAGES
from landsales.core.statuses import ListingStatus, OfferStatus, AgreementStatus
from landsales.core.financial_precision import (
    calculate_price_per_sqm, calculate_agreement_balance, calculate_installment_amount
)
from landsales.core.dates import Clock, utc_today, to_storage_datetime, to_date

logger = logging.getLogger(__name__)


class SalesEngine:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transactions: MongoTransactionManager,
        clock: Clock = utc_today
    ):
        self.db = db
        self.transactions = transactions
        self.clock = clock
        self.audit = AuditService(db)
        self.sequences = SequenceGenerator(db)
        self.plot_lifecycle = PlotLifecycle(db)
        self.guard = ReservationGuard(db)
        self.commissions = CommissionEngine(db)
        self.machines = EntityStateMachines(db, self.guard, self.plot_lifecycle, self.commissions)

    async def _get(self, collection, entity_type: str, entity_id: str, session=None) -> dict:
        doc = await collection.find_one({"_id": to_object_id(entity_type, entity_id)}, session=session)
        if not doc:
            raise NotFoundError(entity_type, entity_id)
        return doc

    # =========================================================================
    # LISTINGS
    # =========================================================================

    async def create_listing(self, data: ListingCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        if data.promo_price is not None and data.promo_price >= data.list_price:
            raise ValidationError(
                error_type="INVALID_PROMO_PRICE",
                message=f"Promo price {data.promo_price} must be below list price {data.list_price}",
                details={"promo_price": data.promo_price, "list_price": data.list_price}
            )

        async def operation(session):
            plot = await self.plot_lifecycle.lock_plot(data.plot_id, session=session)

            listing_doc = to_storage(data.dict())
            listing_doc.update({
                "plot_id": str(plot["_id"]),
                "price_per_sqm": calculate_price_per_sqm(data.list_price, plot["size_sqm"]),
                "status": ListingStatus.DRAFT,
                "listing_date": to_storage_datetime(data.listing_date or self.clock()),
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.listings.insert_one(listing_doc, session=session)
            listing_doc["_id"] = result.inserted_id

            await self.audit.log_action("LISTING", result.inserted_id, "CREATE", user_id,
                                        new_value=listing_doc, session=session)
            return serialize_doc(listing_doc)

        return await self.transactions.run(operation, "CREATE_LISTING")

    async def _transition_listing(self, listing_id: str, to_state: str, user_id: Optional[str]):
        async def operation(session):
            listing = await self._get(self.db.listings, "Listing", listing_id, session=session)
            plot = await self.plot_lifecycle.lock_plot(listing["plot_id"], session=session)

            result = await self.machines.listing.transition(
                listing, to_state, session=session, context={"plot": plot, "user_id": user_id}
            )
            listing.update(result["handler_result"])
            await self.audit.log_action("LISTING", listing["_id"], "STATUS_CHANGE", user_id,
                                        old_value={"status": result["from_state"]},
                                        new_value={"status": to_state}, session=session)
            return serialize_doc(listing)

        return await self.transactions.run(operation, f"LISTING_{to_state.upper()}")

    async def activate_listing(self, listing_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """At most one active listing per plot"""
        return await self._transition_listing(listing_id, ListingStatus.ACTIVE, user_id)

    async def withdraw_listing(self, listing_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._transition_listing(listing_id, ListingStatus.WITHDRAWN, user_id)

    # =========================================================================
    # OFFERS
    # =========================================================================

    async def create_offer(self, data: OfferCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a client offer in DRAFT (or straight to RESERVED when
        data.reserve is set, which takes the plot).
        """
        if data.reservation_fee > data.offer_price:
            raise ValidationError(
                error_type="RESERVATION_FEE_EXCEEDS_PRICE",
                message=f"Reservation fee {data.reservation_fee} exceeds offer price {data.offer_price}",
                details={"reservation_fee": data.reservation_fee, "offer_price": data.offer_price}
            )
        if data.expiry_date <= data.reservation_date:
            raise ValidationError(
                error_type="INVALID_DATE_RANGE",
                message=f"Expiry date {data.expiry_date} must be after reservation date {data.reservation_date}",
                details={"reservation_date": str(data.reservation_date), "expiry_date": str(data.expiry_date)}
            )

        async def operation(session):
            plot = await self.plot_lifecycle.lock_plot(data.plot_id, session=session)
            if plot["stage"] not in SELLABLE_STAGES:
                raise ConflictError(
                    error_type="PLOT_NOT_FOR_SALE",
                    message=f"Plot {data.plot_id} is {plot['stage']} and cannot take offers",
                    details={"plot_id": data.plot_id, "stage": plot["stage"]}
                )
            if data.listing_id:
                await self._get(self.db.listings, "Listing", data.listing_id, session=session)

            offer_doc = to_storage(data.dict(exclude={"reserve"}))
            offer_doc.update({
                "plot_id": str(plot["_id"]),
                "status": OfferStatus.DRAFT,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.offers_reservations.insert_one(offer_doc, session=session)
            offer_doc["_id"] = result.inserted_id

            if data.reserve:
                transition = await self.machines.offer.transition(
                    offer_doc, OfferStatus.RESERVED, session=session,
                    context={"plot": plot, "user_id": user_id}
                )
                offer_doc.update(transition["handler_result"])

            await self.audit.log_action("OFFER", result.inserted_id, "CREATE", user_id,
                                        new_value=offer_doc, session=session)
            logger.info(f"[TRANSACTION] Offer created on plot {data.plot_id}: {offer_doc['status']}")
            return serialize_doc(offer_doc)

        return await self.transactions.run(operation, "CREATE_OFFER")

    async def _transition_offer(
        self,
        offer_id: str,
        to_state: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        async def operation(session):
            offer = await self._get(self.db.offers_reservations, "Offer", offer_id, session=session)
            plot = await self.plot_lifecycle.lock_plot(offer["plot_id"], session=session)

            result = await self.machines.offer.transition(
                offer, to_state, session=session,
                context={"plot": plot, "user_id": user_id, "reason": reason}
            )
            offer.update(result["handler_result"])

            await self.audit.log_action("OFFER", offer["_id"], "STATUS_CHANGE", user_id,
                                        old_value={"status": result["from_state"]},
                                        new_value={"status": to_state, "reason": reason}, session=session)
            return serialize_doc(offer)

        return await self.transactions.run(operation, f"OFFER_{to_state.upper()}")

    async def reserve_offer(self, offer_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._transition_offer(offer_id, OfferStatus.RESERVED, user_id)

    async def accept_offer(self, offer_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Accept an offer. Plot -> RESERVED; fails with ConflictError if another offer holds the plot."""
        return await self._transition_offer(offer_id, OfferStatus.ACCEPTED, user_id)

    async def decline_offer(self, offer_id: str, reason: Optional[str] = None,
                            user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._transition_offer(offer_id, OfferStatus.DECLINED, user_id, reason)

    async def cancel_offer(self, offer_id: str, reason: Optional[str] = None,
                           user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._transition_offer(offer_id, OfferStatus.CANCELLED, user_id, reason)

    async def expire_offer(self, offer_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._transition_offer(offer_id, OfferStatus.EXPIRED, user_id, "expired")

    # =========================================================================
    # SALE AGREEMENTS
    # =========================================================================

    async def create_sale_agreement(self, data: SaleAgreementCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a DRAFT agreement with a generated AGR-YYYY-NNNN number.
        Plot -> SOLD.
        """
        if data.deposit_required > data.price:
            raise ValidationError(
                error_type="DEPOSIT_EXCEEDS_PRICE",
                message=f"Deposit required {data.deposit_required} exceeds price {data.price}",
                details={"deposit_required": data.deposit_required, "price": data.price}
            )

        async def operation(session):
            plot = await self.plot_lifecycle.lock_plot(data.plot_id, session=session)
            plot_key = str(plot["_id"])

            if plot["stage"] not in SELLABLE_STAGES:
                raise ConflictError(
                    error_type="PLOT_NOT_FOR_SALE",
                    message=f"Cannot create agreement on plot {data.plot_id} in stage {plot['stage']}",
                    details={"plot_id": data.plot_id, "stage": plot["stage"]}
                )

            holding_offer = await self.db.offers_reservations.find_one(
                {"plot_id": plot_key, "status": {"$in": list(OfferStatus.HOLDING)}},
                session=session
            )
            if holding_offer and str(holding_offer["_id"]) != data.offer_id:
                raise ConflictError(
                    error_type="PLOT_RESERVED_FOR_OTHER_OFFER",
                    message=f"Plot {data.plot_id} is held by offer {holding_offer['_id']}",
                    details={"plot_id": data.plot_id, "offer_id": str(holding_offer["_id"])}
                )
            if data.offer_id and not holding_offer:
                offer = await self._get(self.db.offers_reservations, "Offer", data.offer_id, session=session)
                if offer["plot_id"] != plot_key:
                    raise ValidationError(
                        error_type="OFFER_PLOT_MISMATCH",
                        message=f"Offer {data.offer_id} is not for plot {data.plot_id}",
                        details={"offer_id": data.offer_id, "plot_id": data.plot_id}
                    )

            agreement_no, sequence = await self.sequences.generate("AGR", self.clock().year, session=session)

            agreement_doc = to_storage(data.dict())
            agreement_doc.update(calculate_agreement_balance(data.price, 0))
            agreement_doc.update({
                "agreement_no": agreement_no,
                "sequence_number": sequence,
                "plot_id": plot_key,
                "status": AgreementStatus.DRAFT,
                "completion_date": None,
                "title_transfer_date": None,
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.sale_agreements.insert_one(agreement_doc, session=session)
            agreement_doc["_id"] = result.inserted_id

            agreement_doc["plot_stage"] = await self.plot_lifecycle.rederive_stage(plot_key, session=session, plot=plot)

            await self.audit.log_action("SALE_AGREEMENT", result.inserted_id, "CREATE", user_id,
                                        new_value=agreement_doc, session=session)
            logger.info(f"[TRANSACTION] Agreement {agreement_no} created on plot {plot_key}")
            return serialize_doc(agreement_doc)

        return await self.transactions.run(operation, "CREATE_SALE_AGREEMENT")

    async def transition_agreement(
        self,
        agreement_id: str,
        to_state: str,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        session=None
    ) -> dict:
        """Run an agreement transition inside an existing transaction"""
        agreement = await lock_document(self.db.sale_agreements, "SaleAgreement", agreement_id, session=session)
        plot = await self.plot_lifecycle.lock_plot(agreement["plot_id"], session=session)

        context = dict(context or {})
        context.update({"plot": plot, "user_id": user_id, "today": self.clock()})
        result = await self.machines.agreement.transition(agreement, to_state, session=session, context=context)
        agreement.update(result["handler_result"])

        await self.audit.log_action("SALE_AGREEMENT", agreement["_id"], "STATUS_CHANGE", user_id,
                                    old_value={"status": result["from_state"]},
                                    new_value={"status": to_state, "reason": context.get("reason")},
                                    session=session)
        return agreement

    async def _run_agreement_transition(self, agreement_id: str, to_state: str,
                                        user_id: Optional[str], context: Optional[Dict] = None):
        async def operation(session):
            agreement = await self.transition_agreement(agreement_id, to_state, user_id, context, session=session)
            return serialize_doc(agreement)

        return await self.transactions.run(operation, f"AGREEMENT_{to_state.upper()}")

    async def activate_agreement(self, agreement_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Agreement signed: draft -> active, creates the agent commission"""
        return await self._run_agreement_transition(agreement_id, AgreementStatus.ACTIVE, user_id)

    async def settle_agreement(self, agreement_id: str, title_transfer_date=None,
                               user_id: Optional[str] = None) -> Dict[str, Any]:
        """Title transferred: completed -> settled, plot -> TRANSFERRED"""
        return await self._run_agreement_transition(
            agreement_id, AgreementStatus.SETTLED, user_id,
            {"title_transfer_date": to_date(title_transfer_date)}
        )

    async def cancel_agreement(self, agreement_id: str, reason: Optional[str] = None,
                               user_id: Optional[str] = None) -> Dict[str, Any]:
        """Cancel agreement, cancel pending commissions, re-derive plot stage"""
        return await self._run_agreement_transition(
            agreement_id, AgreementStatus.CANCELLED, user_id, {"reason": reason}
        )

    async def mark_agreement_defaulted(self, agreement_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._run_agreement_transition(agreement_id, AgreementStatus.DEFAULTED, user_id)

    # =========================================================================
    # PAYMENT PLANS
    # =========================================================================

    async def create_payment_plan(self, data: PaymentPlanCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            agreement = await lock_document(self.db.sale_agreements, "SaleAgreement",
                                            data.sale_agreement_id, session=session)
            agreement_key = str(agreement["_id"])

            if agreement["status"] in (AgreementStatus.CANCELLED, AgreementStatus.SETTLED):
                raise ConflictError(
                    error_type="AGREEMENT_CLOSED",
                    message=f"Agreement {agreement['agreement_no']} is {agreement['status']}",
                    details={"sale_agreement_id": agreement_key, "status": agreement["status"]}
                )
            if await self.db.payment_plans.find_one({"sale_agreement_id": agreement_key}, {"_id": 1}, session=session):
                raise ConflictError(
                    error_type="PAYMENT_PLAN_EXISTS",
                    message=f"Agreement {agreement['agreement_no']} already has a payment plan",
                    details={"sale_agreement_id": agreement_key}
                )

            plan_doc = to_storage(data.dict())
            if plan_doc.get("installment_amount") is None:
                plan_doc["installment_amount"] = calculate_installment_amount(
                    agreement["price"], data.deposit_percent, data.number_of_installments
                )
            plan_doc.update({
                "sale_agreement_id": agreement_key,
                "created_by": user_id,
                "created_at": datetime.utcnow()
            })
            result = await self.db.payment_plans.insert_one(plan_doc, session=session)
            plan_doc["_id"] = result.inserted_id

            await self.audit.log_action("PAYMENT_PLAN", result.inserted_id, "CREATE", user_id,
                                        new_value=plan_doc, session=session)
            return serialize_doc(plan_doc)

        return await self.transactions.run(operation, "CREATE_PAYMENT_PLAN")
