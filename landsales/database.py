from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional, Tuple
import logging

from landsales.config import Settings, get_settings
from landsales.core.atomic_numbering import SequenceGenerator
from landsales.core.commission_engine import CommissionEngine

logger = logging.getLogger(__name__)


def create_client(settings: Optional[Settings] = None) -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """MongoDB connection. Transactions need a replica set or sharded cluster."""
    settings = settings or get_settings()
    client = AsyncIOMotorClient(settings.mongo_url)
    return client, client[settings.db_name]


async def create_indexes(db: AsyncIOMotorDatabase):
    """Unique constraints and lookup indexes for the engine collections"""
    await SequenceGenerator(db).create_unique_constraints()
    await CommissionEngine(db).create_unique_constraints()

    try:
        await db.parcels.create_index([("lr_number", 1)], unique=True, name="unique_lr_number")
        await db.plots.create_index(
            [("subdivision_id", 1), ("plot_no", 1)],
            unique=True,
            name="unique_plot_no_per_subdivision"
        )
        await db.parcel_owners.create_index([("parcel_id", 1), ("is_active", 1)], name="parcel_owner_lookup")
        await db.offers_reservations.create_index([("plot_id", 1), ("status", 1)], name="offer_plot_status")
        await db.listings.create_index([("plot_id", 1), ("status", 1)], name="listing_plot_status")
        await db.listings.create_index(
            [("plot_id", 1)],
            unique=True,
            partialFilterExpression={"status": "active"},
            name="unique_active_listing_per_plot"
        )
        await db.sale_agreements.create_index([("plot_id", 1), ("status", 1)], name="agreement_plot_status")
        await db.receipts.create_index([("sale_agreement_id", 1)], name="receipt_agreement_lookup")
        await db.payment_allocations.create_index([("invoice_id", 1)], name="allocation_invoice_lookup")
        await db.payment_allocations.create_index([("receipt_id", 1)], name="allocation_receipt_lookup")
        await db.payment_plans.create_index([("sale_agreement_id", 1)], unique=True, name="unique_plan_per_agreement")
        await db.documents.create_index(
            [("parent_document_id", 1), ("is_current_version", 1)],
            name="document_chain_lookup"
        )
        logger.info("Land sales indexes created")
    except Exception as e:
        logger.warning(f"Index creation result: {str(e)}")
