"""
PAYMENT RECONCILIATION LEDGER

Owns the derived payment fields:
- sale_agreements.deposit_paid / balance_due (from receipts)
- invoices.amount_paid / balance / status (from payment allocations)

Recomputation always sums the full set of source rows, never applies deltas.

LOCKED FORMULAS:
- deposit_paid = SUM(receipts.amount) for the agreement
- balance_due = price - deposit_paid
- amount_paid = SUM(payment_allocations.amount) for the invoice
- balance = amount_due - amount_paid
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import date, datetime
from typing import Optional
import logging

from landsales.core.errors import ValidationError
from landsales.core.financial_precision import (
    to_decimal, round_financial, to_float, calculate_agreement_balance
)
from landsales.core.statuses import InvoiceStatus
from landsales.core.dates import to_date
from landsales.core.transactions import lock_document

logger = logging.getLogger(__name__)


def compute_invoice_status(amount_paid, amount_due, due_date, today: date) -> str:
    """
    - nothing paid and past due -> overdue
    - nothing paid              -> unpaid
    - paid >= due               -> paid
    - otherwise                 -> partly_paid
    """
    paid = to_decimal(amount_paid)
    if paid == Decimal('0'):
        if due_date is not None and to_date(due_date) < today:
            return InvoiceStatus.OVERDUE
        return InvoiceStatus.UNPAID
    if paid >= to_decimal(amount_due):
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTLY_PAID


class PaymentLedger:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # =========================================================================
    # AGREEMENT BALANCE
    # =========================================================================

    async def sum_receipts(self, agreement_id: str, session=None) -> Decimal:
        total = Decimal('0')
        async for receipt in self.db.receipts.find(
            {"sale_agreement_id": agreement_id}, {"amount": 1}, session=session
        ):
            total += to_decimal(receipt["amount"])
        return round_financial(total)

    async def recompute_agreement_balance(
        self,
        agreement_id: str,
        session=None,
        agreement: Optional[dict] = None
    ) -> dict:
        """
        Recompute deposit_paid and balance_due from all receipts.

        Raises ValidationError if receipts exceed the agreement price.
        """
        if agreement is None:
            agreement = await lock_document(self.db.sale_agreements, "SaleAgreement", agreement_id, session=session)

        deposit_paid = await self.sum_receipts(str(agreement["_id"]), session=session)
        price = to_decimal(agreement["price"])

        if deposit_paid > price:
            raise ValidationError(
                error_type="OVERPAYMENT",
                message=f"Receipts total {deposit_paid} exceeds agreement price {price}",
                details={
                    "sale_agreement_id": str(agreement["_id"]),
                    "deposit_paid": float(deposit_paid),
                    "price": float(price)
                }
            )

        values = calculate_agreement_balance(price, deposit_paid)
        update = dict(values)
        update["updated_at"] = datetime.utcnow()

        await self.db.sale_agreements.update_one(
            {"_id": agreement["_id"]},
            {"$set": update},
            session=session
        )

        logger.info(
            f"[LEDGER] Agreement {agreement['_id']}: deposit_paid={values['deposit_paid']} "
            f"balance_due={values['balance_due']}"
        )
        agreement.update(update)
        return agreement

    # =========================================================================
    # INVOICE STATUS
    # =========================================================================

    async def sum_allocations(self, query: dict, session=None) -> Decimal:
        total = Decimal('0')
        async for allocation in self.db.payment_allocations.find(query, {"amount": 1}, session=session):
            total += to_decimal(allocation["amount"])
        return round_financial(total)

    async def validate_receipt_capacity(self, receipt: dict, session=None) -> None:
        """Allocations drawn from a receipt may not exceed its amount"""
        allocated = await self.sum_allocations({"receipt_id": str(receipt["_id"])}, session=session)
        if allocated > to_decimal(receipt["amount"]):
            raise ValidationError(
                error_type="RECEIPT_OVER_ALLOCATED",
                message=f"Allocations {allocated} exceed receipt amount {receipt['amount']}",
                details={
                    "receipt_id": str(receipt["_id"]),
                    "allocated": float(allocated),
                    "receipt_amount": float(to_decimal(receipt["amount"]))
                }
            )

    async def recompute_invoice_status(
        self,
        invoice_id: str,
        today: date,
        session=None,
        invoice: Optional[dict] = None
    ) -> dict:
        """
        Recompute amount_paid, balance and status of an invoice from its
        allocations. Over-allocation is stored as is and reads as paid
        with a balance at or below zero.
        """
        if invoice is None:
            invoice = await lock_document(self.db.invoices, "Invoice", invoice_id, session=session)

        invoice_key = str(invoice["_id"])
        amount_paid = await self.sum_allocations({"invoice_id": invoice_key}, session=session)
        amount_due = to_decimal(invoice["amount_due"])

        update = {
            "amount_paid": to_float(amount_paid),
            "balance": to_float(amount_due - amount_paid),
            "updated_at": datetime.utcnow()
        }
        if invoice["status"] != InvoiceStatus.CANCELLED:
            update["status"] = compute_invoice_status(amount_paid, amount_due, invoice.get("due_date"), today)

        await self.db.invoices.update_one(
            {"_id": invoice["_id"]},
            {"$set": update},
            session=session
        )

        logger.info(f"[LEDGER] Invoice {invoice_key}: amount_paid={update['amount_paid']} status={update.get('status', invoice['status'])}")
        invoice.update(update)
        return invoice
