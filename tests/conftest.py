"""Pytest configuration and fixtures."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import date, timedelta

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from landsales.config import Settings
from landsales.core.transactions import MongoTransactionManager
from landsales.engine import LandSalesEngine
from landsales.models import (
    ParcelCreate, OwnerCreate, SubdivisionCreate, PlotCreate,
    OfferCreate, SaleAgreementCreate, InvoiceCreate, ReceiptCreate
)

TODAY = date(2025, 6, 15)


class SerializedTransactionManager(MongoTransactionManager):
    """
    Runs commands one at a time without a session.

    The in-memory store has no multi-document transactions, so the lock
    stands in for the serialization a replica set gives through write
    conflicts. With a database attached, every collection is snapshotted
    on entry and restored when the command raises, the way an aborted
    transaction discards its writes. Retry behaviour is inherited unchanged.
    """

    def __init__(self, db=None, max_retries: int = 3):
        super().__init__(client=None, max_retries=max_retries, retry_delay_ms=0)
        self.db = db
        self._lock = None

    async def _snapshot(self):
        snapshot = {}
        for name in await self.db.list_collection_names():
            snapshot[name] = await self.db[name].find({}).to_list(length=None)
        return snapshot

    async def _restore(self, snapshot):
        for name in await self.db.list_collection_names():
            await self.db[name].delete_many({})
            if snapshot.get(name):
                await self.db[name].insert_many(snapshot[name])

    @asynccontextmanager
    async def transaction(self):
        # created on first use so it binds to the test's event loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            snapshot = await self._snapshot() if self.db is not None else None
            try:
                yield None
            except Exception:
                if snapshot is not None:
                    await self._restore(snapshot)
                raise


async def dump_database(db):
    """Every document of every non-empty collection, keyed by collection name"""
    dump = {}
    for name in sorted(await db.list_collection_names()):
        docs = await db[name].find({}).to_list(length=None)
        if docs:
            dump[name] = sorted(docs, key=lambda doc: str(doc["_id"]))
    return dump


class LandFactory:
    """Builds registry and sales rows through the engine commands."""

    def __init__(self, engine: LandSalesEngine):
        self.engine = engine
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def parcel(self, acreage_ha=5.0):
        return await self.engine.create_parcel(
            ParcelCreate(lr_number=f"LR/{self._next():05d}", county="Kajiado", acreage_ha=acreage_ha)
        )

    async def owner(self, name=None):
        return await self.engine.create_owner(OwnerCreate(full_name=name or f"Owner {self._next()}"))

    async def subdivision(self, parcel_id=None, planned=10, saleable_area_ha=None):
        if parcel_id is None:
            parcel_id = (await self.parcel())["id"]
        return await self.engine.create_subdivision(
            SubdivisionCreate(
                parcel_id=parcel_id,
                name=f"Phase {self._next()}",
                total_plots_planned=planned,
                saleable_area_ha=saleable_area_ha
            )
        )

    async def plot(self, subdivision_id=None, size_sqm=500, ready=True):
        if subdivision_id is None:
            subdivision_id = (await self.subdivision())["id"]
        plot = await self.engine.create_plot(
            PlotCreate(subdivision_id=subdivision_id, plot_no=f"P-{self._next()}", size_sqm=size_sqm)
        )
        if ready:
            await self.engine.mark_plot_surveyed(plot["id"], "SP/2025/01")
            plot = await self.engine.mark_plot_ready_for_sale(plot["id"])
        return plot

    async def offer(self, plot_id, offer_price=100000, reserve=False, reservation_date=TODAY, expiry_days=14):
        return await self.engine.create_offer(
            OfferCreate(
                plot_id=plot_id,
                client_id=f"client-{self._next()}",
                offer_price=offer_price,
                reservation_fee=5000,
                reservation_date=reservation_date,
                expiry_date=reservation_date + timedelta(days=expiry_days),
                reserve=reserve
            )
        )

    async def agent(self, rate=5.0):
        result = await self.engine.db.agents.insert_one({"name": "Jane Agent", "commission_rate": rate})
        return str(result.inserted_id)

    async def agreement(self, plot_id, price=100000, agent_id=None, offer_id=None, activate=False):
        agreement = await self.engine.create_sale_agreement(
            SaleAgreementCreate(
                plot_id=plot_id,
                client_id="client-1",
                offer_id=offer_id,
                agent_id=agent_id,
                agreement_date=TODAY,
                price=price,
                deposit_required=price / 10
            )
        )
        if activate:
            agreement = await self.engine.activate_agreement(agreement["id"])
        return agreement

    async def sold_agreement(self, price=100000, activate=False, agent_id=None):
        plot = await self.plot()
        return await self.agreement(plot["id"], price=price, activate=activate, agent_id=agent_id)

    async def invoice(self, agreement_id, amount_due=1000, due_date=None, issue_date=TODAY):
        return await self.engine.create_invoice(
            InvoiceCreate(
                sale_agreement_id=agreement_id,
                issue_date=issue_date,
                due_date=due_date or TODAY + timedelta(days=30),
                amount_due=amount_due
            )
        )

    async def receipt(self, agreement_id, amount, invoice_id=None):
        return await self.engine.record_receipt(
            ReceiptCreate(sale_agreement_id=agreement_id, invoice_id=invoice_id, paid_date=TODAY, amount=amount)
        )

    async def get(self, collection, entity_id):
        return await self.engine.db[collection].find_one({"_id": ObjectId(entity_id)})


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    client = AsyncMongoMockClient()
    return client[f"landsales_test_{uuid.uuid4().hex}"]


@pytest.fixture
def transactions(db):
    return SerializedTransactionManager(db)


@pytest.fixture
def settings():
    settings = Settings()
    settings.sweep_batch_size = 2
    settings.audit_retention_days = 730
    settings.activity_retention_days = 365
    settings.security_event_retention_days = 365
    return settings


@pytest.fixture
def engine(db, transactions, settings):
    return LandSalesEngine(db, transactions, settings, clock=lambda: TODAY)


@pytest.fixture
def factory(engine):
    return LandFactory(engine)
