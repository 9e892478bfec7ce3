"""
Sales lifecycle tests: listings, offers, agreements and the plot stage
derived from them.
"""

import asyncio
import re

import pytest

from landsales.core.errors import ValidationError, ConflictError
from landsales.core.statuses import PlotStage, ListingStatus, OfferStatus, AgreementStatus
from landsales.models import ListingCreate, OfferCreate, PaymentPlanCreate

from conftest import TODAY


class TestListings:

    @pytest.mark.asyncio
    async def test_listing_price_per_sqm(self, engine, factory):
        plot = await factory.plot(size_sqm=500)
        listing = await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=100000))

        assert listing["status"] == ListingStatus.DRAFT
        assert listing["price_per_sqm"] == 200.0

    @pytest.mark.asyncio
    async def test_promo_price_below_list_price(self, engine, factory):
        plot = await factory.plot()
        with pytest.raises(ValidationError):
            await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=1000, promo_price=1000))

    @pytest.mark.asyncio
    async def test_one_active_listing_per_plot(self, engine, factory):
        plot = await factory.plot()
        first = await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=100000))
        second = await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=95000))

        activated = await engine.activate_listing(first["id"])
        assert activated["status"] == ListingStatus.ACTIVE

        with pytest.raises(ConflictError) as exc:
            await engine.activate_listing(second["id"])
        assert exc.value.error_type == "ACTIVE_LISTING_EXISTS"

        await engine.withdraw_listing(first["id"])
        assert (await engine.activate_listing(second["id"]))["status"] == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_raw_plot_cannot_be_listed(self, engine, factory):
        plot = await factory.plot(ready=False)
        listing = await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=100000))

        with pytest.raises(ConflictError) as exc:
            await engine.activate_listing(listing["id"])
        assert exc.value.error_type == "TRANSITION_BLOCKED"


class TestOffers:

    @pytest.mark.asyncio
    async def test_reservation_fee_cannot_exceed_price(self, engine, factory):
        plot = await factory.plot()
        with pytest.raises(ValidationError) as exc:
            await engine.create_offer(
                OfferCreate(
                    plot_id=plot["id"], client_id="c1", offer_price=1000, reservation_fee=1500,
                    reservation_date=TODAY, expiry_date=TODAY.replace(month=7)
                )
            )
        assert exc.value.error_type == "RESERVATION_FEE_EXCEEDS_PRICE"

    @pytest.mark.asyncio
    async def test_offer_on_raw_plot_rejected(self, factory):
        plot = await factory.plot(ready=False)
        with pytest.raises(ConflictError) as exc:
            await factory.offer(plot["id"])
        assert exc.value.error_type == "PLOT_NOT_FOR_SALE"

    @pytest.mark.asyncio
    async def test_reserve_on_create_takes_plot(self, factory):
        plot = await factory.plot()
        offer = await factory.offer(plot["id"], reserve=True)

        assert offer["status"] == OfferStatus.RESERVED
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.RESERVED

    @pytest.mark.asyncio
    async def test_concurrent_accepts_only_one_wins(self, engine, factory):
        """Two offers accepted at once: exactly one holds the plot"""
        plot = await factory.plot()
        first = await factory.offer(plot["id"])
        second = await factory.offer(plot["id"], offer_price=105000)

        results = await asyncio.gather(
            engine.accept_offer(first["id"]),
            engine.accept_offer(second["id"]),
            return_exceptions=True
        )

        accepted = [r for r in results if isinstance(r, dict)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(accepted) == 1
        assert len(conflicts) == 1
        assert accepted[0]["status"] == OfferStatus.ACCEPTED
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.RESERVED

    @pytest.mark.asyncio
    async def test_declining_holding_offer_releases_plot(self, engine, factory):
        plot = await factory.plot()
        offer = await factory.offer(plot["id"], reserve=True)

        declined = await engine.decline_offer(offer["id"], reason="client withdrew")

        assert declined["status"] == OfferStatus.DECLINED
        assert declined["closed_reason"] == "client withdrew"
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.READY_FOR_SALE

    @pytest.mark.asyncio
    async def test_closed_offer_cannot_be_accepted(self, engine, factory):
        plot = await factory.plot()
        offer = await factory.offer(plot["id"])
        await engine.cancel_offer(offer["id"])

        with pytest.raises(ConflictError) as exc:
            await engine.accept_offer(offer["id"])
        assert exc.value.error_type == "INVALID_TRANSITION"


class TestSaleAgreements:

    @pytest.mark.asyncio
    async def test_agreement_marks_plot_sold(self, factory):
        plot = await factory.plot()
        agreement = await factory.agreement(plot["id"], price=100000)

        assert agreement["status"] == AgreementStatus.DRAFT
        assert agreement["balance_due"] == 100000.0
        assert agreement["deposit_paid"] == 0.0
        assert agreement["plot_stage"] == PlotStage.SOLD
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.SOLD

    @pytest.mark.asyncio
    async def test_agreement_on_raw_plot_rejected(self, factory):
        plot = await factory.plot(ready=False)
        with pytest.raises(ConflictError) as exc:
            await factory.agreement(plot["id"])
        assert exc.value.error_type == "PLOT_NOT_FOR_SALE"

    @pytest.mark.asyncio
    async def test_sold_plot_cannot_take_second_agreement(self, factory):
        plot = await factory.plot()
        await factory.agreement(plot["id"])

        with pytest.raises(ConflictError):
            await factory.agreement(plot["id"])

    @pytest.mark.asyncio
    async def test_plot_held_by_another_offer(self, engine, factory):
        plot = await factory.plot()
        await factory.offer(plot["id"], reserve=True)

        with pytest.raises(ConflictError) as exc:
            await factory.agreement(plot["id"])
        assert exc.value.error_type == "PLOT_RESERVED_FOR_OTHER_OFFER"

    @pytest.mark.asyncio
    async def test_cancel_without_offer_returns_plot_to_sale(self, engine, factory):
        plot = await factory.plot()
        agreement = await factory.agreement(plot["id"])

        cancelled = await engine.cancel_agreement(agreement["id"], reason="finance fell through")

        assert cancelled["status"] == AgreementStatus.CANCELLED
        assert cancelled["cancellation_reason"] == "finance fell through"
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.READY_FOR_SALE

    @pytest.mark.asyncio
    async def test_cancel_closes_converted_offer(self, engine, factory):
        plot = await factory.plot()
        offer = await factory.offer(plot["id"])
        await engine.accept_offer(offer["id"])
        agreement = await factory.agreement(plot["id"], offer_id=offer["id"])
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.SOLD

        cancelled = await engine.cancel_agreement(agreement["id"], reason="buyer withdrew")

        assert cancelled["offer_closed"] is True
        assert (await factory.get("offers_reservations", offer["id"]))["status"] == OfferStatus.CANCELLED
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.READY_FOR_SALE

        fresh = await factory.offer(plot["id"], reserve=True)
        assert fresh["status"] == OfferStatus.RESERVED

    @pytest.mark.asyncio
    async def test_cancel_with_other_holding_offer_keeps_plot_reserved(self, engine, factory):
        plot = await factory.plot()
        agreement = await factory.agreement(plot["id"])
        other = await engine.db.offers_reservations.insert_one({
            "plot_id": plot["id"],
            "client_id": "client-other",
            "offer_price": 90000,
            "status": OfferStatus.ACCEPTED
        })

        cancelled = await engine.cancel_agreement(agreement["id"])

        assert cancelled["offer_closed"] is False
        assert (await factory.get("offers_reservations", str(other.inserted_id)))["status"] == OfferStatus.ACCEPTED
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.RESERVED

    @pytest.mark.asyncio
    async def test_settlement_transfers_plot(self, engine, factory):
        plot = await factory.plot()
        listing = await engine.create_listing(ListingCreate(plot_id=plot["id"], list_price=100000))
        await engine.activate_listing(listing["id"])
        agreement = await factory.agreement(plot["id"], price=100000, activate=True)

        receipt = await factory.receipt(agreement["id"], 100000)
        assert receipt["agreement"]["status"] == AgreementStatus.COMPLETED

        settled = await engine.settle_agreement(agreement["id"])

        assert settled["status"] == AgreementStatus.SETTLED
        assert settled["title_transfer_date"] is not None
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.TRANSFERRED
        assert (await factory.get("listings", listing["id"]))["status"] == ListingStatus.SOLD

    @pytest.mark.asyncio
    async def test_settlement_requires_completed_agreement(self, engine, factory):
        agreement = await factory.sold_agreement(activate=True)

        with pytest.raises(ConflictError) as exc:
            await engine.settle_agreement(agreement["id"])
        assert exc.value.error_type == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_defaulted_agreement_keeps_plot_sold(self, engine, factory):
        plot = await factory.plot()
        agreement = await factory.agreement(plot["id"], activate=True)

        defaulted = await engine.mark_agreement_defaulted(agreement["id"])

        assert defaulted["status"] == AgreementStatus.DEFAULTED
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.SOLD


class TestAgreementNumbering:

    @pytest.mark.asyncio
    async def test_concurrent_agreements_get_unique_numbers(self, factory):
        plots = [await factory.plot() for _ in range(5)]

        agreements = await asyncio.gather(*(factory.agreement(p["id"]) for p in plots))

        numbers = sorted(a["agreement_no"] for a in agreements)
        assert numbers == [f"AGR-2025-{n:04d}" for n in range(1, 6)]
        assert all(re.fullmatch(r"AGR-\d{4}-\d{4}", n) for n in numbers)


class TestPaymentPlans:

    @pytest.mark.asyncio
    async def test_installments_derived_from_price(self, engine, factory):
        agreement = await factory.sold_agreement(price=100000)

        plan = await engine.create_payment_plan(
            PaymentPlanCreate(
                sale_agreement_id=agreement["id"],
                deposit_percent=10,
                number_of_installments=12,
                first_installment_date=TODAY
            )
        )
        assert plan["installment_amount"] == 7500.0

    @pytest.mark.asyncio
    async def test_one_plan_per_agreement(self, engine, factory):
        agreement = await factory.sold_agreement()
        data = PaymentPlanCreate(
            sale_agreement_id=agreement["id"],
            deposit_percent=10,
            number_of_installments=6,
            first_installment_date=TODAY
        )
        await engine.create_payment_plan(data)

        with pytest.raises(ConflictError) as exc:
            await engine.create_payment_plan(data)
        assert exc.value.error_type == "PAYMENT_PLAN_EXISTS"
