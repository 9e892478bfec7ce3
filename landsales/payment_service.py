"""
PAYMENT SERVICE

Receipts, invoices and payment allocations.

Every mutation recomputes the derived fields it affects inside the same
transaction:
- receipt insert/update/delete  -> agreement deposit_paid / balance_due
- allocation insert/update/delete -> invoice amount_paid / balance / status

An active agreement that becomes fully paid moves to completed; a
completed agreement whose receipts are reduced moves back to active.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional
import logging

from landsales.models import (
    ReceiptCreate, ReceiptUpdate, InvoiceCreate,
    PaymentAllocationCreate, PaymentAllocationUpdate
)
from landsales.audit_service import AuditService
from landsales.serialization import serialize_doc, to_storage
from landsales.sales_engine import SalesEngine
from landsales.core.errors import ValidationError, ConflictError, NotFoundError
from landsales.core.transactions import MongoTransactionManager, lock_document, to_object_id
from landsales.core.atomic_numbering import SequenceGenerator
from landsales.core.payment_ledger import PaymentLedger, compute_invoice_status
from landsales.core.statuses import AgreementStatus, InvoiceStatus
from landsales.core.financial_precision import to_float
from landsales.core.dates import Clock, utc_today, to_storage_datetime

logger = logging.getLogger(__name__)


class PaymentService:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transactions: MongoTransactionManager,
        sales: SalesEngine,
        clock: Clock = utc_today
    ):
        self.db = db
        self.transactions = transactions
        self.sales = sales
        self.clock = clock
        self.audit = AuditService(db)
        self.sequences = SequenceGenerator(db)
        self.ledger = PaymentLedger(db)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _lock_open_agreement(self, agreement_id: str, session=None) -> dict:
        agreement = await lock_document(self.db.sale_agreements, "SaleAgreement", agreement_id, session=session)
        if agreement["status"] not in AgreementStatus.ACCEPTS_RECEIPTS:
            raise ConflictError(
                error_type="AGREEMENT_CLOSED",
                message=f"Agreement {agreement['agreement_no']} is {agreement['status']} and cannot take payments",
                details={"sale_agreement_id": str(agreement["_id"]), "status": agreement["status"]}
            )
        return agreement

    async def _reconcile_agreement(self, agreement: dict, user_id: Optional[str], session=None) -> dict:
        """Recompute balance, then move between active and completed if the balance crossed zero"""
        agreement = await self.ledger.recompute_agreement_balance(
            str(agreement["_id"]), session=session, agreement=agreement
        )
        agreement_id = str(agreement["_id"])

        if agreement["status"] == AgreementStatus.ACTIVE and agreement["balance_due"] == 0:
            agreement = await self.sales.transition_agreement(
                agreement_id, AgreementStatus.COMPLETED, user_id, session=session
            )
        elif agreement["status"] == AgreementStatus.COMPLETED and agreement["balance_due"] > 0:
            agreement = await self.sales.transition_agreement(
                agreement_id, AgreementStatus.ACTIVE, user_id, session=session
            )
        return agreement

    async def _insert_allocation(self, receipt: dict, invoice: dict, amount, allocation_date, session=None) -> dict:
        if invoice["sale_agreement_id"] != receipt["sale_agreement_id"]:
            raise ValidationError(
                error_type="ALLOCATION_AGREEMENT_MISMATCH",
                message=f"Receipt {receipt['receipt_no']} and invoice {invoice['invoice_no']} belong to different agreements",
                details={"receipt_id": str(receipt["_id"]), "invoice_id": str(invoice["_id"])}
            )
        if invoice["status"] == InvoiceStatus.CANCELLED:
            raise ConflictError(
                error_type="INVOICE_CANCELLED",
                message=f"Invoice {invoice['invoice_no']} is cancelled",
                details={"invoice_id": str(invoice["_id"])}
            )

        allocation_doc = {
            "receipt_id": str(receipt["_id"]),
            "invoice_id": str(invoice["_id"]),
            "amount": to_float(amount),
            "allocation_date": to_storage_datetime(allocation_date or self.clock()),
            "created_at": datetime.utcnow()
        }
        result = await self.db.payment_allocations.insert_one(allocation_doc, session=session)
        allocation_doc["_id"] = result.inserted_id

        await self.ledger.validate_receipt_capacity(receipt, session=session)
        await self.ledger.recompute_invoice_status(str(invoice["_id"]), self.clock(), session=session, invoice=invoice)
        return allocation_doc

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    async def record_receipt(self, data: ReceiptCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a payment against an agreement (RCP-YYYY-NNNNNN).

        With invoice_id set, the full amount is allocated to that invoice.
        """
        async def operation(session):
            agreement = await self._lock_open_agreement(data.sale_agreement_id, session=session)
            invoice = None
            if data.invoice_id:
                invoice = await lock_document(self.db.invoices, "Invoice", data.invoice_id, session=session)

            receipt_no, sequence = await self.sequences.generate("RCP", self.clock().year, session=session)

            receipt_doc = to_storage(data.dict(exclude={"invoice_id"}))
            receipt_doc.update({
                "receipt_no": receipt_no,
                "sequence_number": sequence,
                "sale_agreement_id": str(agreement["_id"]),
                "invoice_id": data.invoice_id,
                "amount": to_float(data.amount),
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.receipts.insert_one(receipt_doc, session=session)
            receipt_doc["_id"] = result.inserted_id

            agreement = await self._reconcile_agreement(agreement, user_id, session=session)

            if invoice is not None:
                await self._insert_allocation(receipt_doc, invoice, data.amount, data.paid_date, session=session)

            await self.audit.log_action("RECEIPT", result.inserted_id, "CREATE", user_id,
                                        new_value=receipt_doc, session=session)
            logger.info(
                f"[TRANSACTION] Receipt {receipt_no}: {data.amount} on agreement "
                f"{agreement['agreement_no']} (balance {agreement['balance_due']})"
            )
            response = serialize_doc(receipt_doc)
            response["agreement"] = serialize_doc(agreement)
            return response

        return await self.transactions.run(operation, "RECORD_RECEIPT")

    async def update_receipt(self, receipt_id: str, data: ReceiptUpdate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            receipt = await self.db.receipts.find_one({"_id": to_object_id("Receipt", receipt_id)}, session=session)
            if not receipt:
                raise NotFoundError("Receipt", receipt_id)
            agreement = await self._lock_open_agreement(receipt["sale_agreement_id"], session=session)

            changes = to_storage({k: v for k, v in data.dict().items() if v is not None})
            if "amount" in changes:
                changes["amount"] = to_float(changes["amount"])
            changes["updated_at"] = datetime.utcnow()

            await self.db.receipts.update_one({"_id": receipt["_id"]}, {"$set": changes}, session=session)
            old_receipt = dict(receipt)
            receipt.update(changes)

            if "amount" in changes:
                await self.ledger.validate_receipt_capacity(receipt, session=session)
                agreement = await self._reconcile_agreement(agreement, user_id, session=session)

            await self.audit.log_action("RECEIPT", receipt["_id"], "UPDATE", user_id,
                                        old_value=old_receipt, new_value=changes, session=session)
            response = serialize_doc(receipt)
            response["agreement"] = serialize_doc(agreement)
            return response

        return await self.transactions.run(operation, "UPDATE_RECEIPT")

    async def delete_receipt(self, receipt_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Remove a receipt and its allocations, recomputing every affected invoice"""
        async def operation(session):
            receipt = await self.db.receipts.find_one({"_id": to_object_id("Receipt", receipt_id)}, session=session)
            if not receipt:
                raise NotFoundError("Receipt", receipt_id)
            agreement = await self._lock_open_agreement(receipt["sale_agreement_id"], session=session)

            receipt_key = str(receipt["_id"])
            allocations = await self.db.payment_allocations.find(
                {"receipt_id": receipt_key}, session=session
            ).to_list(length=None)
            invoice_ids = sorted({a["invoice_id"] for a in allocations})

            await self.db.payment_allocations.delete_many({"receipt_id": receipt_key}, session=session)
            await self.db.receipts.delete_one({"_id": receipt["_id"]}, session=session)

            agreement = await self._reconcile_agreement(agreement, user_id, session=session)
            for invoice_id in invoice_ids:
                await self.ledger.recompute_invoice_status(invoice_id, self.clock(), session=session)

            await self.audit.log_action("RECEIPT", receipt["_id"], "DELETE", user_id,
                                        old_value=receipt, session=session)
            logger.info(f"[TRANSACTION] Receipt {receipt['receipt_no']} deleted ({len(allocations)} allocations)")
            return {
                "deleted": True,
                "receipt_id": receipt_key,
                "invoices_recomputed": invoice_ids,
                "agreement": serialize_doc(agreement)
            }

        return await self.transactions.run(operation, "DELETE_RECEIPT")

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def create_invoice(self, data: InvoiceCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        if data.due_date < data.issue_date:
            raise ValidationError(
                error_type="INVALID_DATE_RANGE",
                message=f"Due date {data.due_date} is before issue date {data.issue_date}",
                details={"issue_date": str(data.issue_date), "due_date": str(data.due_date)}
            )

        async def operation(session):
            agreement = await self._lock_open_agreement(data.sale_agreement_id, session=session)
            invoice_no, sequence = await self.sequences.generate("INV", self.clock().year, session=session)

            invoice_doc = to_storage(data.dict())
            invoice_doc.update({
                "invoice_no": invoice_no,
                "sequence_number": sequence,
                "sale_agreement_id": str(agreement["_id"]),
                "amount_due": to_float(data.amount_due),
                "amount_paid": 0.0,
                "balance": to_float(data.amount_due),
                "status": compute_invoice_status(0, data.amount_due, data.due_date, self.clock()),
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.invoices.insert_one(invoice_doc, session=session)
            invoice_doc["_id"] = result.inserted_id

            await self.audit.log_action("INVOICE", result.inserted_id, "CREATE", user_id,
                                        new_value=invoice_doc, session=session)
            logger.info(f"[TRANSACTION] Invoice {invoice_no} issued: {data.amount_due}")
            return serialize_doc(invoice_doc)

        return await self.transactions.run(operation, "CREATE_INVOICE")

    # =========================================================================
    # ALLOCATIONS
    # =========================================================================

    async def allocate_payment(self, data: PaymentAllocationCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Apply part of a receipt to an invoice and recompute the invoice status"""
        async def operation(session):
            receipt = await lock_document(self.db.receipts, "Receipt", data.receipt_id, session=session)
            invoice = await lock_document(self.db.invoices, "Invoice", data.invoice_id, session=session)

            allocation = await self._insert_allocation(
                receipt, invoice, data.amount, data.allocation_date, session=session
            )

            await self.audit.log_action("PAYMENT_ALLOCATION", allocation["_id"], "CREATE", user_id,
                                        new_value=allocation, session=session)
            response = serialize_doc(allocation)
            response["invoice"] = serialize_doc(invoice)
            return response

        return await self.transactions.run(operation, "ALLOCATE_PAYMENT")

    async def update_allocation(
        self,
        allocation_id: str,
        data: PaymentAllocationUpdate,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        async def operation(session):
            allocation = await self.db.payment_allocations.find_one(
                {"_id": to_object_id("PaymentAllocation", allocation_id)}, session=session
            )
            if not allocation:
                raise NotFoundError("PaymentAllocation", allocation_id)

            receipt = await lock_document(self.db.receipts, "Receipt", allocation["receipt_id"], session=session)
            invoice = await lock_document(self.db.invoices, "Invoice", allocation["invoice_id"], session=session)

            changes = {"amount": to_float(data.amount), "updated_at": datetime.utcnow()}
            await self.db.payment_allocations.update_one({"_id": allocation["_id"]}, {"$set": changes}, session=session)

            await self.ledger.validate_receipt_capacity(receipt, session=session)
            invoice = await self.ledger.recompute_invoice_status(
                allocation["invoice_id"], self.clock(), session=session, invoice=invoice
            )

            await self.audit.log_action("PAYMENT_ALLOCATION", allocation["_id"], "UPDATE", user_id,
                                        old_value={"amount": allocation["amount"]}, new_value=changes,
                                        session=session)
            allocation.update(changes)
            response = serialize_doc(allocation)
            response["invoice"] = serialize_doc(invoice)
            return response

        return await self.transactions.run(operation, "UPDATE_ALLOCATION")

    async def delete_allocation(self, allocation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            allocation = await self.db.payment_allocations.find_one(
                {"_id": to_object_id("PaymentAllocation", allocation_id)}, session=session
            )
            if not allocation:
                raise NotFoundError("PaymentAllocation", allocation_id)

            invoice = await lock_document(self.db.invoices, "Invoice", allocation["invoice_id"], session=session)
            await self.db.payment_allocations.delete_one({"_id": allocation["_id"]}, session=session)
            invoice = await self.ledger.recompute_invoice_status(
                allocation["invoice_id"], self.clock(), session=session, invoice=invoice
            )

            await self.audit.log_action("PAYMENT_ALLOCATION", allocation["_id"], "DELETE", user_id,
                                        old_value=allocation, session=session)
            return {"deleted": True, "allocation_id": allocation_id, "invoice": serialize_doc(invoice)}

        return await self.transactions.run(operation, "DELETE_ALLOCATION")
