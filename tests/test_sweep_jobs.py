"""
Sweep job tests: offer expiry, overdue invoices, retention purge,
integrity check and job bookkeeping.
"""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from landsales.core.statuses import PlotStage, OfferStatus, InvoiceStatus
from landsales.models import PaymentAllocationCreate
from landsales.sweep_jobs import JobStatus, JobType

from conftest import TODAY


class TestExpireOffers:

    @pytest.mark.asyncio
    async def test_stale_reservation_expires_and_releases_plot(self, engine, factory):
        plot = await factory.plot()
        stale = await factory.offer(plot["id"], reserve=True,
                                    reservation_date=TODAY - timedelta(days=20), expiry_days=14)
        other_plot = await factory.plot()
        fresh = await factory.offer(other_plot["id"])

        result = await engine.expire_stale_offers()

        assert result == {"expired": 1, "failed": 0, "failed_ids": []}
        assert (await factory.get("offers_reservations", stale["id"]))["status"] == OfferStatus.EXPIRED
        assert (await factory.get("offers_reservations", fresh["id"]))["status"] == OfferStatus.DRAFT
        assert (await factory.get("plots", plot["id"]))["stage"] == PlotStage.READY_FOR_SALE

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, engine, factory):
        plot = await factory.plot()
        await factory.offer(plot["id"], reservation_date=TODAY - timedelta(days=20), expiry_days=14)

        await engine.expire_stale_offers()
        result = await engine.expire_stale_offers()

        assert result["expired"] == 0


class TestOverdueInvoices:

    @pytest.mark.asyncio
    async def test_marks_overdue_and_creates_one_follow_up(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        receipt = await factory.receipt(agreement["id"], 100)
        await engine.allocate_payment(
            PaymentAllocationCreate(receipt_id=receipt["id"], invoice_id=invoice["id"], amount=100)
        )
        await engine.db.invoices.update_one(
            {"_id": ObjectId(invoice["id"])},
            {"$set": {"due_date": datetime(2025, 6, 10)}}
        )

        first = await engine.mark_overdue_invoices()
        second = await engine.mark_overdue_invoices()

        assert first["marked"] == 1
        assert first["tasks_created"] == 1
        assert second["marked"] == 0
        assert second["tasks_created"] == 0

        assert (await factory.get("invoices", invoice["id"]))["status"] == InvoiceStatus.OVERDUE
        tasks = await engine.db.tasks_reminders.find({"entity_id": invoice["id"]}).to_list(length=None)
        assert len(tasks) == 1
        assert tasks[0]["title"] == "Overdue Invoice: INV-2025-000001"
        assert tasks[0]["priority"] == "high"
        assert tasks[0]["due_date"] == datetime(2025, 6, 16)

    @pytest.mark.asyncio
    async def test_paid_invoice_untouched(self, engine, factory):
        agreement = await factory.sold_agreement()
        invoice = await factory.invoice(agreement["id"], amount_due=1000)
        await factory.receipt(agreement["id"], 1000, invoice_id=invoice["id"])
        await engine.db.invoices.update_one(
            {"_id": ObjectId(invoice["id"])},
            {"$set": {"due_date": datetime(2025, 6, 10)}}
        )

        result = await engine.mark_overdue_invoices()

        assert result["marked"] == 0
        assert (await factory.get("invoices", invoice["id"]))["status"] == InvoiceStatus.PAID


class TestRetentionPurge:

    @pytest.mark.asyncio
    async def test_old_rows_purged_in_batches(self, engine):
        old = datetime(2022, 1, 1)
        recent = datetime(2025, 6, 1)
        await engine.db.activities_audit.insert_many(
            [{"entity_type": "PLOT", "created_at": old} for _ in range(3)]
            + [{"entity_type": "PLOT", "created_at": recent}]
        )
        await engine.db.security_events.insert_many([
            {"severity": "critical", "created_at": old},
            {"severity": "info", "created_at": old},
        ])

        result = await engine.purge_old_audit_rows()

        assert result["activities_audit"] == 3
        assert result["security_events"] == 1
        assert await engine.db.activities_audit.count_documents({}) == 1
        assert await engine.db.security_events.count_documents({"severity": "critical"}) == 1

    @pytest.mark.asyncio
    async def test_access_logs_aged_by_access_time(self, engine):
        old = datetime(2022, 1, 1)
        recent = datetime(2025, 6, 1)
        await engine.db.data_access_logs.insert_many([
            {"resource": "plot", "accessed_at": old, "created_at": recent},
            {"resource": "plot", "accessed_at": recent, "created_at": old},
        ])

        result = await engine.purge_old_audit_rows()

        assert result["data_access_logs"] == 1
        remaining = await engine.db.data_access_logs.find({}).to_list(length=None)
        assert [row["accessed_at"] for row in remaining] == [recent]


class TestIntegrityCheck:

    @pytest.mark.asyncio
    async def test_clean_data_has_no_violations(self, engine, factory):
        agreement = await factory.sold_agreement()
        await factory.receipt(agreement["id"], 5000)

        report = await engine.run_integrity_check()

        assert report["violations_found"] == 0

    @pytest.mark.asyncio
    async def test_tampered_balance_raises_alert(self, engine, factory):
        agreement = await factory.sold_agreement(price=100000)
        await engine.db.sale_agreements.update_one(
            {"_id": ObjectId(agreement["id"])},
            {"$set": {"deposit_paid": 500.0}}
        )

        report = await engine.run_integrity_check()

        types = [v["type"] for v in report["violations"]]
        assert "BALANCE_INCONSISTENT" in types
        alert = await engine.db.alerts.find_one({"alert_type": "BALANCE_INCONSISTENT"})
        assert alert["entity_id"] == agreement["id"]
        assert alert["resolved"] is False

    @pytest.mark.asyncio
    async def test_stage_drift_detected(self, engine, factory):
        plot = await factory.plot()
        await engine.db.plots.update_one({"_id": ObjectId(plot["id"])}, {"$set": {"stage": PlotStage.SOLD}})

        report = await engine.run_integrity_check()

        mismatches = [v for v in report["violations"] if v["type"] == "PLOT_STAGE_MISMATCH"]
        assert len(mismatches) == 1
        assert mismatches[0]["expected"] == PlotStage.READY_FOR_SALE


class TestJobExecution:

    @pytest.mark.asyncio
    async def test_scheduled_job_completes(self, engine):
        job_id = await engine.jobs.schedule_job(JobType.INTEGRITY_CHECK)

        job = await engine.jobs.execute_job(job_id)

        assert job["status"] == JobStatus.COMPLETED
        assert job["result"] == {"violations_found": 0}

    @pytest.mark.asyncio
    async def test_unknown_job_is_retried_with_backoff(self, engine):
        job_id = await engine.jobs.schedule_job("NOT_A_JOB")

        job = await engine.jobs.execute_job(job_id)

        assert job["status"] == JobStatus.RETRYING
        assert job["retry_count"] == 1
        assert "Unknown job type" in job["error_message"]

    @pytest.mark.asyncio
    async def test_job_fails_after_max_retries(self, engine):
        job_id = await engine.jobs.schedule_job("NOT_A_JOB")
        await engine.db.background_jobs.update_one(
            {"_id": ObjectId(job_id)},
            {"$set": {"retry_count": engine.jobs.MAX_RETRY_ATTEMPTS}}
        )

        job = await engine.jobs.execute_job(job_id)

        assert job["status"] == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_run_due_jobs(self, engine):
        await engine.jobs.schedule_job(JobType.EXPIRE_OFFERS)
        await engine.jobs.schedule_job(JobType.PURGE_AUDIT_ROWS)

        results = await engine.jobs.run_due_jobs()

        assert [r["status"] for r in results] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
