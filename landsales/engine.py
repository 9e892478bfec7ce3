"""
LAND SALES ENGINE

Single entry point composing the command services over one database:
- RegistryService: parcels, owners, subdivisions, plots
- SalesEngine: listings, offers, agreements, payment plans
- PaymentService: receipts, invoices, allocations
- DocumentService: document version chains
- SweepJobEngine: expiry, overdue, retention and integrity jobs
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional
import logging

from landsales.config import Settings, get_settings, configure_logging
from landsales.database import create_client, create_indexes
from landsales.registry_service import RegistryService
from landsales.sales_engine import SalesEngine
from landsales.payment_service import PaymentService
from landsales.document_service import DocumentService
from landsales.sweep_jobs import SweepJobEngine
from landsales.core.transactions import MongoTransactionManager
from landsales.core.dates import Clock, utc_today

logger = logging.getLogger(__name__)


class LandSalesEngine:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transactions: MongoTransactionManager,
        settings: Optional[Settings] = None,
        clock: Clock = utc_today
    ):
        self.db = db
        self.transactions = transactions
        self.settings = settings or get_settings()
        self.clock = clock

        self.registry = RegistryService(db, transactions, clock)
        self.sales = SalesEngine(db, transactions, clock)
        self.payments = PaymentService(db, transactions, self.sales, clock)
        self.documents = DocumentService(db, transactions)
        self.jobs = SweepJobEngine(db, transactions, self.sales, self.settings, clock)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LandSalesEngine":
        settings = settings or get_settings()
        configure_logging(settings.log_level)
        client, db = create_client(settings)
        transactions = MongoTransactionManager(
            client,
            max_retries=settings.conflict_max_retries,
            retry_delay_ms=settings.conflict_retry_delay_ms
        )
        logger.info(f"Land sales engine connected to {settings.db_name}")
        return cls(db, transactions, settings)

    async def create_indexes(self):
        await create_indexes(self.db)
        await self.jobs.create_indexes()

    # ===== REGISTRY =====

    async def create_parcel(self, data, user_id=None):
        return await self.registry.create_parcel(data, user_id)

    async def create_owner(self, data, user_id=None):
        return await self.registry.create_owner(data, user_id)

    async def add_parcel_owner(self, data, user_id=None):
        return await self.registry.add_parcel_owner(data, user_id)

    async def update_parcel_owner(self, link_id, data, user_id=None):
        return await self.registry.update_parcel_owner(link_id, data, user_id)

    async def create_subdivision(self, data, user_id=None):
        return await self.registry.create_subdivision(data, user_id)

    async def create_plot(self, data, user_id=None):
        return await self.registry.create_plot(data, user_id)

    async def update_plot(self, plot_id, data, user_id=None):
        return await self.registry.update_plot(plot_id, data, user_id)

    async def delete_plot(self, plot_id, user_id=None):
        return await self.registry.delete_plot(plot_id, user_id)

    async def mark_plot_surveyed(self, plot_id, survey_plan_ref=None, user_id=None):
        return await self.registry.mark_plot_surveyed(plot_id, survey_plan_ref, user_id)

    async def mark_plot_ready_for_sale(self, plot_id, user_id=None):
        return await self.registry.mark_plot_ready_for_sale(plot_id, user_id)

    # ===== SALES =====

    async def create_listing(self, data, user_id=None):
        return await self.sales.create_listing(data, user_id)

    async def activate_listing(self, listing_id, user_id=None):
        return await self.sales.activate_listing(listing_id, user_id)

    async def withdraw_listing(self, listing_id, user_id=None):
        return await self.sales.withdraw_listing(listing_id, user_id)

    async def create_offer(self, data, user_id=None):
        return await self.sales.create_offer(data, user_id)

    async def reserve_offer(self, offer_id, user_id=None):
        return await self.sales.reserve_offer(offer_id, user_id)

    async def accept_offer(self, offer_id, user_id=None):
        return await self.sales.accept_offer(offer_id, user_id)

    async def decline_offer(self, offer_id, reason=None, user_id=None):
        return await self.sales.decline_offer(offer_id, reason, user_id)

    async def cancel_offer(self, offer_id, reason=None, user_id=None):
        return await self.sales.cancel_offer(offer_id, reason, user_id)

    async def expire_offer(self, offer_id, user_id=None):
        return await self.sales.expire_offer(offer_id, user_id)

    async def create_sale_agreement(self, data, user_id=None):
        return await self.sales.create_sale_agreement(data, user_id)

    async def activate_agreement(self, agreement_id, user_id=None):
        return await self.sales.activate_agreement(agreement_id, user_id)

    async def settle_agreement(self, agreement_id, title_transfer_date=None, user_id=None):
        return await self.sales.settle_agreement(agreement_id, title_transfer_date, user_id)

    async def cancel_agreement(self, agreement_id, reason=None, user_id=None):
        return await self.sales.cancel_agreement(agreement_id, reason, user_id)

    async def mark_agreement_defaulted(self, agreement_id, user_id=None):
        return await self.sales.mark_agreement_defaulted(agreement_id, user_id)

    async def create_payment_plan(self, data, user_id=None):
        return await self.sales.create_payment_plan(data, user_id)

    # ===== PAYMENTS =====

    async def record_receipt(self, data, user_id=None):
        return await self.payments.record_receipt(data, user_id)

    async def update_receipt(self, receipt_id, data, user_id=None):
        return await self.payments.update_receipt(receipt_id, data, user_id)

    async def delete_receipt(self, receipt_id, user_id=None):
        return await self.payments.delete_receipt(receipt_id, user_id)

    async def create_invoice(self, data, user_id=None):
        return await self.payments.create_invoice(data, user_id)

    async def allocate_payment(self, data, user_id=None):
        return await self.payments.allocate_payment(data, user_id)

    async def update_allocation(self, allocation_id, data, user_id=None):
        return await self.payments.update_allocation(allocation_id, data, user_id)

    async def delete_allocation(self, allocation_id, user_id=None):
        return await self.payments.delete_allocation(allocation_id, user_id)

    # ===== DOCUMENTS =====

    async def upload_document_version(self, data, user_id=None):
        return await self.documents.upload_document_version(data, user_id)

    # ===== SWEEPS =====

    async def expire_stale_offers(self):
        return await self.jobs.expire_stale_offers()

    async def mark_overdue_invoices(self):
        return await self.jobs.mark_overdue_invoices()

    async def purge_old_audit_rows(self):
        return await self.jobs.purge_old_audit_rows()

    async def run_integrity_check(self):
        return await self.jobs.run_integrity_check()
