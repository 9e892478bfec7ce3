"""
Payment reconciliation tests: agreement balances from receipts, invoice
status from allocations, and the cascades on update/delete.
"""

from datetime import timedelta

import pytest
from bson import ObjectId

from landsales.core.errors import ValidationError, ConflictError, NotFoundError
from landsales.core.statuses import AgreementStatus, InvoiceStatus
from landsales.models import PaymentAllocationCreate, PaymentAllocationUpdate, ReceiptUpdate

from conftest import TODAY


class TestAgreementBalance:

    @pytest.mark.asyncio
    async def test_receipts_drive_balance(self, factory):
        agreement = await factory.sold_agreement(price=100000)

        await factory.receipt(agreement["id"], 30000)
        receipt = await factory.receipt(agreement["id"], 20000)

        assert receipt["receipt_no"] == "RCP-2025-000002"
        assert receipt["agreement"]["deposit_paid"] == 50000.0
        assert receipt["agreement"]["balance_due"] == 50000.0

        stored = await factory.get("sale_agreements", agreement["id"])
        assert stored["deposit_paid"] + stored["balance_due"] == stored["price"]

    @pytest.mark.asyncio
    async def test_overpayment_rejected(self, factory):
        agreement = await factory.sold_agreement(price=100000)
        await factory.receipt(agreement["id"], 90000)

        with pytest.raises(ValidationError) as exc:
            await factory.receipt(agreement["id"], 20000)
        assert exc.value.error_type == "OVERPAYMENT"

    @pytest.mark.asyncio
    async def test_receipt_number_skips_legacy_rows(self, engine, factory):
        agreement = await factory.sold_agreement()
        await engine.db.receipts.insert_one({"receipt_no": "RCP-2025-000001", "amount": 0,
                                             "sale_agreement_id": "legacy"})

        receipt = await factory.receipt(agreement["id"], 1000)

        assert receipt["receipt_no"] == "RCP-2025-000002"

    @pytest.mark.asyncio
    async def test_full_payment_completes_active_agreement(self, engine, factory):
        agreement = await factory.sold_agreement(price=100000, activate=True)

        receipt = await factory.receipt(agreement["id"], 100000)

        assert receipt["agreement"]["status"] == AgreementStatus.COMPLETED
        assert receipt["agreement"]["balance_due"] == 0.0
        assert receipt["agreement"]["completion_date"] is not None

    @pytest.mark.asyncio
    async def test_deleting_receipt_reopens_completed_agreement(self, engine, factory):
        agreement = await factory.sold_agreement(price=100000, activate=True)
        receipt = await factory.receipt(agreement["id"], 100000)

        result = await engine.delete_receipt(receipt["id"])

        assert result["deleted"] is True
        assert result["agreement"]["status"] == AgreementStatus.ACTIVE
        assert result["agreement"]["balance_due"] == 100000.0
        assert result["agreement"]["completion_date"] is None

    @pytest.mark.asyncio
    async def test_receipt_amount_update_recomputes_balance(self, engine, factory):
        agreement = await factory.sold_agreement(price=100000)
        receipt = await factory.receipt(agreement["id"], 10000)

        updated = await engine.update_receipt(receipt["id"], ReceiptUpdate(amount=25000))

        assert updated["amount"] == 25000.0
        assert updated["agreement"]["balance_due"] == 75000.0

    @pytest.mark.asyncio
    async def test_cancelled_agreement_rejects_receipts(self, engine, factory):
        agreement = await factory.sold_agreement()
        await engine.cancel_agreement(agreement["id"])

        with pytest.raises(ConflictError) as exc:
            await factory.receipt(agreement["id"], 1000)
        assert exc.value.error_type == "AGREEMENT_CLOSED"


class TestInvoices:

    @pytest.mark.asyncio
    async def test_invoice_paid_in_two_allocations(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 1000)
        assert invoice["invoice_no"] == "INV-2025-000001"
        assert invoice["status"] == InvoiceStatus.UNPAID

        first = await engine.allocate_payment(
            PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=400)
        )
        assert first["invoice"]["status"] == InvoiceStatus.PARTLY_PAID
        assert first["invoice"]["balance"] == 600.0

        second = await engine.allocate_payment(
            PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=600)
        )
        assert second["invoice"]["status"] == InvoiceStatus.PAID
        assert second["invoice"]["amount_paid"] == 1000.0
        assert second["invoice"]["balance"] == 0.0

    @pytest.mark.asyncio
    async def test_invoice_past_due_created_overdue(self, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], due_date=TODAY - timedelta(days=1),
                                        issue_date=TODAY - timedelta(days=31))

        assert invoice["status"] == InvoiceStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_receipt_with_invoice_allocates_in_full(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=5000)

        await factory.receipt(agreement["id"], 5000, invoice_id=invoice["id"])

        stored = await factory.get("invoices", invoice["id"])
        assert stored["status"] == InvoiceStatus.PAID
        assert await engine.db.payment_allocations.count_documents({"invoice_id": invoice["id"]}) == 1

    @pytest.mark.asyncio
    async def test_invoice_over_allocation_reads_as_paid(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 2000)

        for _ in range(2):
            await engine.allocate_payment(
                PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=600)
            )

        stored = await factory.get("invoices", invoice["id"])
        assert stored["status"] == InvoiceStatus.PAID
        assert stored["amount_paid"] == 1200.0
        assert stored["balance"] == -200.0

    @pytest.mark.asyncio
    async def test_receipt_over_allocation_rejected(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 500)

        with pytest.raises(ValidationError) as exc:
            await engine.allocate_payment(
                PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=600)
            )
        assert exc.value.error_type == "RECEIPT_OVER_ALLOCATED"

    @pytest.mark.asyncio
    async def test_allocation_across_agreements_rejected(self, engine, factory):
        first = await factory.sold_agreement()
        second = await factory.sold_agreement()
        invoice = await factory.invoice(first["id"])
        receipt = await factory.receipt(second["id"], 1000)

        with pytest.raises(ValidationError) as exc:
            await engine.allocate_payment(
                PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=100)
            )
        assert exc.value.error_type == "ALLOCATION_AGREEMENT_MISMATCH"

    @pytest.mark.asyncio
    async def test_allocation_update_and_delete_recompute_invoice(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 1000)
        allocation = await engine.allocate_payment(
            PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=400)
        )

        updated = await engine.update_allocation(allocation["id"], PaymentAllocationUpdate(amount=1000))
        assert updated["invoice"]["status"] == InvoiceStatus.PAID

        deleted = await engine.delete_allocation(allocation["id"])
        assert deleted["invoice"]["status"] == InvoiceStatus.UNPAID
        assert deleted["invoice"]["amount_paid"] == 0.0

    @pytest.mark.asyncio
    async def test_deleting_receipt_recomputes_its_invoices(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 1000, invoice_id=invoice["id"])

        result = await engine.delete_receipt(receipt["id"])

        assert result["invoices_recomputed"] == [invoice["id"]]
        stored = await factory.get("invoices", invoice["id"])
        assert stored["status"] == InvoiceStatus.UNPAID
        assert await engine.db.payment_allocations.count_documents({"receipt_id": receipt["id"]}) == 0

    @pytest.mark.asyncio
    async def test_unknown_invoice_not_found(self, engine, factory):
        agreement = await factory.sold_agreement()
        receipt = await factory.receipt(agreement["id"], 1000)

        with pytest.raises(NotFoundError) as exc:
            await engine.allocate_payment(
                PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=str(ObjectId()), amount=100)
            )
        assert exc.value.error_type == "NOT_FOUND"
