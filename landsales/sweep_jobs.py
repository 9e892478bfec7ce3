"""
SWEEP JOBS

Implements timer-driven batch jobs:
1. Expire Offers - reserved/draft offers past expiry_date
2. Overdue Invoices - unpaid/partly_paid past due_date, with follow-up tasks
3. Retention Purge - old audit/activity/access/security rows
4. Integrity Check - cross-entity invariant scan, alerts for findings

RULES:
- Jobs are idempotent
- Each item runs in its own transaction
- A failed item is logged and skipped; the sweep continues
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List
from bson import ObjectId
import logging
import traceback

from landsales.config import Settings, get_settings
from landsales.sales_engine import SalesEngine
from landsales.core.transactions import MongoTransactionManager, lock_document, to_object_id
from landsales.core.invariant_validator import MAX_OWNERSHIP_PERCENTAGE, AREA_TOLERANCE
from landsales.core.plot_lifecycle import derive_plot_stage
from landsales.core.financial_precision import to_decimal, round_financial, sqm_to_hectares, to_float
from landsales.core.statuses import OfferStatus, AgreementStatus, InvoiceStatus, TaskStatus
from landsales.core.dates import Clock, utc_today, to_storage_datetime, add_days

logger = logging.getLogger(__name__)


class JobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class JobType:
    EXPIRE_OFFERS = "EXPIRE_OFFERS"
    MARK_OVERDUE_INVOICES = "MARK_OVERDUE_INVOICES"
    PURGE_AUDIT_ROWS = "PURGE_AUDIT_ROWS"
    INTEGRITY_CHECK = "INTEGRITY_CHECK"


class SweepJobEngine:
    """
    Batch jobs over the land sales collections.

    Features:
    - Per-item transactions through the normal command set
    - Job records with retry and exponential backoff
    """

    MAX_RETRY_ATTEMPTS = 5
    BASE_RETRY_DELAY = 60  # seconds

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transactions: MongoTransactionManager,
        sales: SalesEngine,
        settings: Optional[Settings] = None,
        clock: Clock = utc_today
    ):
        self.db = db
        self.transactions = transactions
        self.sales = sales
        self.settings = settings or get_settings()
        self.clock = clock

    def _batches(self, ids: List[ObjectId]):
        size = max(1, self.settings.sweep_batch_size)
        for start in range(0, len(ids), size):
            yield ids[start:start + size]

    # =========================================================================
    # JOB 1: EXPIRE OFFERS
    # =========================================================================

    async def expire_stale_offers(self) -> Dict[str, Any]:
        """Expire reserved/draft offers whose expiry_date has passed"""
        today = to_storage_datetime(self.clock())
        candidates = await self.db.offers_reservations.find(
            {"status": {"$in": list(OfferStatus.EXPIRABLE)}, "expiry_date": {"$lt": today}},
            {"_id": 1}
        ).to_list(length=None)

        expired = 0
        failed_ids = []
        for batch in self._batches([c["_id"] for c in candidates]):
            for offer_id in batch:
                try:
                    await self.sales.expire_offer(str(offer_id))
                    expired += 1
                except Exception as e:
                    failed_ids.append(str(offer_id))
                    logger.error(f"[SWEEP] Offer {offer_id} expiry failed: {e}")

        logger.info(f"[SWEEP] Offers: {expired} expired, {len(failed_ids)} failed")
        return {"expired": expired, "failed": len(failed_ids), "failed_ids": failed_ids}

    # =========================================================================
    # JOB 2: OVERDUE INVOICES
    # =========================================================================

    async def _mark_invoice_overdue(self, invoice_id: ObjectId) -> Dict[str, bool]:
        today = self.clock()

        async def operation(session):
            invoice = await lock_document(self.db.invoices, "Invoice", invoice_id, session=session)
            marked = False
            if invoice["status"] in InvoiceStatus.OPEN and invoice["due_date"] < to_storage_datetime(today):
                await self.db.invoices.update_one(
                    {"_id": invoice["_id"]},
                    {"$set": {"status": InvoiceStatus.OVERDUE, "updated_at": datetime.utcnow()}},
                    session=session
                )
                marked = True
            elif invoice["status"] != InvoiceStatus.OVERDUE:
                # paid or cancelled since the candidate scan
                return {"marked": False, "task_created": False}

            open_task = await self.db.tasks_reminders.find_one(
                {
                    "entity_type": "invoice",
                    "entity_id": str(invoice["_id"]),
                    "task_type": "payment_follow_up",
                    "status": {"$in": list(TaskStatus.OPEN)}
                },
                {"_id": 1},
                session=session
            )
            if open_task:
                return {"marked": marked, "task_created": False}

            await self.db.tasks_reminders.insert_one({
                "title": f"Overdue Invoice: {invoice['invoice_no']}",
                "description": (
                    f"Invoice {invoice['invoice_no']} is overdue. "
                    f"Balance: {invoice.get('balance', invoice['amount_due'])}"
                ),
                "task_type": "payment_follow_up",
                "priority": "high",
                "status": TaskStatus.PENDING,
                "entity_type": "invoice",
                "entity_id": str(invoice["_id"]),
                "due_date": add_days(today, 1),
                "created_at": datetime.utcnow()
            }, session=session)
            return {"marked": marked, "task_created": True}

        return await self.transactions.run(operation, "MARK_INVOICE_OVERDUE")

    async def mark_overdue_invoices(self) -> Dict[str, Any]:
        """
        Mark unpaid/partly_paid invoices past due as overdue and open one
        payment follow-up task per overdue invoice.
        """
        today = to_storage_datetime(self.clock())
        candidates = await self.db.invoices.find(
            {
                "status": {"$in": list(InvoiceStatus.OPEN) + [InvoiceStatus.OVERDUE]},
                "due_date": {"$lt": today}
            },
            {"_id": 1}
        ).to_list(length=None)

        marked = 0
        tasks_created = 0
        failed_ids = []
        for batch in self._batches([c["_id"] for c in candidates]):
            for invoice_id in batch:
                try:
                    result = await self._mark_invoice_overdue(invoice_id)
                    marked += int(result["marked"])
                    tasks_created += int(result["task_created"])
                except Exception as e:
                    failed_ids.append(str(invoice_id))
                    logger.error(f"[SWEEP] Invoice {invoice_id} overdue marking failed: {e}")

        logger.info(f"[SWEEP] Invoices: {marked} marked overdue, {tasks_created} follow-ups, {len(failed_ids)} failed")
        return {"marked": marked, "tasks_created": tasks_created, "failed": len(failed_ids), "failed_ids": failed_ids}

    # =========================================================================
    # JOB 3: RETENTION PURGE
    # =========================================================================

    def _retention_rules(self) -> List[Dict[str, Any]]:
        return [
            {"collection": "activities_audit", "days": self.settings.audit_retention_days,
             "timestamp_field": "created_at", "filter": {}},
            {"collection": "data_access_logs", "days": self.settings.audit_retention_days,
             "timestamp_field": "accessed_at", "filter": {}},
            {"collection": "user_activities", "days": self.settings.activity_retention_days,
             "timestamp_field": "created_at", "filter": {}},
            {
                "collection": "security_events",
                "days": self.settings.security_event_retention_days,
                "timestamp_field": "created_at",
                "filter": {"severity": {"$ne": "critical"}}
            },
        ]

    async def purge_old_audit_rows(self) -> Dict[str, int]:
        """Delete rows past retention in bounded batches. Critical security events are kept."""
        now = to_storage_datetime(self.clock())
        batch_size = max(1, self.settings.sweep_batch_size)
        purged = {}

        for rule in self._retention_rules():
            collection = self.db[rule["collection"]]
            query = dict(rule["filter"])
            query[rule["timestamp_field"]] = {"$lt": now - timedelta(days=rule["days"])}

            deleted = 0
            while True:
                batch = await collection.find(query, {"_id": 1}, limit=batch_size).to_list(length=None)
                if not batch:
                    break
                result = await collection.delete_many({"_id": {"$in": [doc["_id"] for doc in batch]}})
                deleted += result.deleted_count
                if result.deleted_count == 0:
                    break

            purged[rule["collection"]] = deleted
            if deleted:
                logger.info(f"[PURGE] {rule['collection']}: {deleted} rows older than {rule['days']} days")

        return purged

    # =========================================================================
    # JOB 4: INTEGRITY CHECK
    # =========================================================================

    async def run_integrity_check(self) -> Dict[str, Any]:
        """
        Scan for invariant violations that slipped past the command layer.
        Every finding is stored as an unresolved alert.
        """
        findings = []

        # Ownership shares
        totals: Dict[str, Decimal] = {}
        async for link in self.db.parcel_owners.find({"is_active": True}):
            totals[link["parcel_id"]] = totals.get(link["parcel_id"], Decimal('0')) + to_decimal(link["ownership_percentage"])
        for parcel_id, total in totals.items():
            if round_financial(total) > MAX_OWNERSHIP_PERCENTAGE:
                findings.append({"type": "OWNERSHIP_EXCEEDS_100", "entity_type": "parcel",
                                 "entity_id": parcel_id, "total_percentage": float(total)})

        # Duplicate registry numbers
        seen_lr: Dict[str, str] = {}
        async for parcel in self.db.parcels.find({}, {"lr_number": 1}):
            lr_number = parcel.get("lr_number")
            if lr_number in seen_lr:
                findings.append({"type": "DUPLICATE_LR_NUMBER", "entity_type": "parcel",
                                 "entity_id": str(parcel["_id"]), "lr_number": lr_number,
                                 "duplicate_of": seen_lr[lr_number]})
            else:
                seen_lr[lr_number] = str(parcel["_id"])

        # Orphaned plots
        subdivision_ids = set()
        async for subdivision in self.db.subdivisions.find({}, {"_id": 1}):
            subdivision_ids.add(str(subdivision["_id"]))
        async for plot in self.db.plots.find({}, {"subdivision_id": 1}):
            if plot["subdivision_id"] not in subdivision_ids:
                findings.append({"type": "ORPHANED_PLOT", "entity_type": "plot",
                                 "entity_id": str(plot["_id"]), "subdivision_id": plot["subdivision_id"]})

        findings.extend(await self._check_subdivisions())
        findings.extend(await self._check_plots())
        findings.extend(await self._check_agreements())

        for finding in findings:
            await self.db.alerts.insert_one({
                "alert_type": finding["type"],
                "severity": "HIGH",
                "entity_type": finding["entity_type"],
                "entity_id": finding["entity_id"],
                "details": finding,
                "resolved": False,
                "detected_at": datetime.utcnow()
            })

        if findings:
            logger.warning(f"[INTEGRITY] {len(findings)} violation(s) found")
        else:
            logger.info("[INTEGRITY] No violations found")

        return {"violations_found": len(findings), "violations": findings, "checked_at": datetime.utcnow()}

    async def _check_subdivisions(self) -> List[Dict[str, Any]]:
        findings = []
        async for subdivision in self.db.subdivisions.find({}):
            subdivision_id = str(subdivision["_id"])
            plots = await self.db.plots.find({"subdivision_id": subdivision_id}, {"size_sqm": 1}).to_list(length=None)

            if len(plots) != subdivision.get("total_plots_created", 0) or len(plots) > subdivision["total_plots_planned"]:
                findings.append({"type": "PLOT_COUNT_MISMATCH", "entity_type": "subdivision",
                                 "entity_id": subdivision_id, "actual_plots": len(plots),
                                 "total_plots_created": subdivision.get("total_plots_created", 0),
                                 "total_plots_planned": subdivision["total_plots_planned"]})

            if subdivision.get("saleable_area_ha") is not None:
                total_ha = sqm_to_hectares(sum((to_decimal(p["size_sqm"]) for p in plots), Decimal('0')))
                if total_ha > to_decimal(subdivision["saleable_area_ha"]) * AREA_TOLERANCE:
                    findings.append({"type": "AREA_BUDGET_EXCEEDED", "entity_type": "subdivision",
                                     "entity_id": subdivision_id, "total_area_ha": float(total_ha),
                                     "saleable_area_ha": subdivision["saleable_area_ha"]})
        return findings

    async def _check_plots(self) -> List[Dict[str, Any]]:
        findings = []
        async for plot in self.db.plots.find({}):
            plot_id = str(plot["_id"])
            offers = await self.db.offers_reservations.find({"plot_id": plot_id}, {"status": 1}).to_list(length=None)
            agreements = await self.db.sale_agreements.find({"plot_id": plot_id}, {"status": 1}).to_list(length=None)
            offer_statuses = [o["status"] for o in offers]
            agreement_statuses = [a["status"] for a in agreements]

            holding_offers = [s for s in offer_statuses if s in OfferStatus.HOLDING]
            if len(holding_offers) > 1:
                findings.append({"type": "MULTIPLE_ACTIVE_OFFERS", "entity_type": "plot",
                                 "entity_id": plot_id, "count": len(holding_offers)})

            holding_agreements = [s for s in agreement_statuses if s in AgreementStatus.HOLDING]
            if len(holding_agreements) > 1:
                findings.append({"type": "MULTIPLE_ACTIVE_AGREEMENTS", "entity_type": "plot",
                                 "entity_id": plot_id, "count": len(holding_agreements)})

            expected = derive_plot_stage(plot["stage"], offer_statuses, agreement_statuses)
            if expected != plot["stage"]:
                findings.append({"type": "PLOT_STAGE_MISMATCH", "entity_type": "plot",
                                 "entity_id": plot_id, "stage": plot["stage"], "expected": expected})
        return findings

    async def _check_agreements(self) -> List[Dict[str, Any]]:
        findings = []
        async for agreement in self.db.sale_agreements.find({}):
            agreement_id = str(agreement["_id"])
            receipts_total = Decimal('0')
            async for receipt in self.db.receipts.find({"sale_agreement_id": agreement_id}, {"amount": 1}):
                receipts_total += to_decimal(receipt["amount"])

            deposit_paid = to_decimal(agreement.get("deposit_paid", 0))
            balance_due = to_decimal(agreement.get("balance_due", 0))
            price = to_decimal(agreement["price"])

            if round_financial(receipts_total) != round_financial(deposit_paid) or \
                    round_financial(price - deposit_paid) != round_financial(balance_due):
                findings.append({"type": "BALANCE_INCONSISTENT", "entity_type": "sale_agreement",
                                 "entity_id": agreement_id, "receipts_total": to_float(receipts_total),
                                 "deposit_paid": to_float(deposit_paid), "balance_due": to_float(balance_due)})
            if balance_due < 0:
                findings.append({"type": "NEGATIVE_BALANCE", "entity_type": "sale_agreement",
                                 "entity_id": agreement_id, "balance_due": to_float(balance_due)})
        return findings

    # =========================================================================
    # JOB SCHEDULING
    # =========================================================================

    async def schedule_job(
        self,
        job_type: str,
        params: Optional[Dict[str, Any]] = None,
        scheduled_by: Optional[str] = None,
        run_at: Optional[datetime] = None
    ) -> str:
        """Schedule a job for execution"""
        job_doc = {
            "job_type": job_type,
            "params": params or {},
            "status": JobStatus.PENDING,
            "scheduled_by": scheduled_by or "SYSTEM",
            "scheduled_at": datetime.utcnow(),
            "run_at": run_at or datetime.utcnow(),
            "started_at": None,
            "completed_at": None,
            "retry_count": 0,
            "error_message": None,
            "result": None
        }

        result = await self.db.background_jobs.insert_one(job_doc)
        job_id = str(result.inserted_id)
        logger.info(f"[JOB] Scheduled: {job_id} type={job_type}")
        return job_id

    async def _dispatch(self, job_type: str) -> Dict[str, Any]:
        if job_type == JobType.EXPIRE_OFFERS:
            return await self.expire_stale_offers()
        if job_type == JobType.MARK_OVERDUE_INVOICES:
            return await self.mark_overdue_invoices()
        if job_type == JobType.PURGE_AUDIT_ROWS:
            return await self.purge_old_audit_rows()
        if job_type == JobType.INTEGRITY_CHECK:
            report = await self.run_integrity_check()
            return {"violations_found": report["violations_found"]}
        raise ValueError(f"Unknown job type: {job_type}")

    async def execute_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Execute a scheduled job, rescheduling with backoff on failure"""
        job_key = to_object_id("BackgroundJob", job_id)
        job = await self.db.background_jobs.find_one({"_id": job_key})
        if not job:
            logger.error(f"[JOB] Not found: {job_id}")
            return None

        await self.db.background_jobs.update_one(
            {"_id": job_key},
            {"$set": {"status": JobStatus.RUNNING, "started_at": datetime.utcnow()}}
        )

        try:
            result = await self._dispatch(job["job_type"])
        except Exception as e:
            error_msg = str(e)
            logger.error(f"[JOB] Failed: {job_id} - {error_msg}")
            logger.error(traceback.format_exc())

            retry_count = job.get("retry_count", 0)
            if retry_count < self.MAX_RETRY_ATTEMPTS:
                delay = self.BASE_RETRY_DELAY * (2 ** retry_count)
                await self.db.background_jobs.update_one(
                    {"_id": job_key},
                    {
                        "$set": {
                            "status": JobStatus.RETRYING,
                            "error_message": error_msg,
                            "run_at": datetime.utcnow() + timedelta(seconds=delay)
                        },
                        "$inc": {"retry_count": 1}
                    }
                )
                logger.info(f"[JOB] Scheduled retry {retry_count + 1} for {job_id} in {delay}s")
            else:
                await self.db.background_jobs.update_one(
                    {"_id": job_key},
                    {
                        "$set": {
                            "status": JobStatus.FAILED,
                            "completed_at": datetime.utcnow(),
                            "error_message": error_msg
                        }
                    }
                )
            return await self.get_job_status(job_id)

        await self.db.background_jobs.update_one(
            {"_id": job_key},
            {"$set": {"status": JobStatus.COMPLETED, "completed_at": datetime.utcnow(), "result": result}}
        )
        logger.info(f"[JOB] Completed: {job_id}")
        return await self.get_job_status(job_id)

    async def run_due_jobs(self) -> List[Dict[str, Any]]:
        """Execute every pending/retrying job whose run_at has passed"""
        return [await self.execute_job(job["job_id"]) for job in await self.get_pending_jobs()]

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.db.background_jobs.find_one({"_id": to_object_id("BackgroundJob", job_id)})
        if job:
            job["job_id"] = str(job.pop("_id"))
        return job

    async def get_pending_jobs(self) -> List[Dict[str, Any]]:
        jobs = await self.db.background_jobs.find({
            "status": {"$in": [JobStatus.PENDING, JobStatus.RETRYING]},
            "run_at": {"$lte": datetime.utcnow()}
        }).to_list(length=100)

        for job in jobs:
            job["job_id"] = str(job.pop("_id"))
        return jobs

    async def create_indexes(self):
        """Create indexes for job tracking and sweeps"""
        try:
            await self.db.background_jobs.create_index(
                [("status", 1), ("run_at", 1)],
                name="job_queue_lookup"
            )
            await self.db.offers_reservations.create_index(
                [("status", 1), ("expiry_date", 1)],
                name="offer_expiry_lookup"
            )
            await self.db.invoices.create_index(
                [("status", 1), ("due_date", 1)],
                name="invoice_due_lookup"
            )
            await self.db.tasks_reminders.create_index(
                [("entity_type", 1), ("entity_id", 1), ("task_type", 1), ("status", 1)],
                name="task_entity_lookup"
            )
            for rule in self._retention_rules():
                await self.db[rule["collection"]].create_index(
                    [(rule["timestamp_field"], 1)], name="retention_lookup"
                )
            logger.info("Sweep job indexes created")
        except Exception as e:
            logger.warning(f"Job index creation: {e}")
