"""
LAND REGISTRY SERVICE

Parcels, owners, ownership links, subdivisions and plots.

ALL mutations run in one transaction with the aggregate root locked:
- ownership links lock the parcel
- plots lock the subdivision
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional
import logging

from landsales.models import (
    ParcelCreate, OwnerCreate, ParcelOwnerCreate, ParcelOwnerUpdate,
    SubdivisionCreate, PlotCreate, PlotUpdate
)
from landsales.audit_service import AuditService
from landsales.serialization import serialize_doc, to_storage
from landsales.core.errors import ValidationError, ConflictError, NotFoundError
from landsales.core.transactions import MongoTransactionManager, lock_document, to_object_id
from landsales.core.invariant_validator import LandInvariantValidator
from landsales.core.state_machine_wiring import create_plot_state_machine
from landsales.core.statuses import PlotStage
from landsales.core.financial_precision import sqm_to_acres
from landsales.core.dates import Clock, utc_today

logger = logging.getLogger(__name__)


class RegistryService:

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
        self.validator = LandInvariantValidator(db)
        self.plot_machine = create_plot_state_machine(db)

    # =========================================================================
    # PARCELS & OWNERS
    # =========================================================================

    async def create_parcel(self, data: ParcelCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            existing = await self.db.parcels.find_one({"lr_number": data.lr_number}, {"_id": 1}, session=session)
            if existing:
                raise ValidationError(
                    error_type="DUPLICATE_LR_NUMBER",
                    message=f"Parcel with LR number {data.lr_number} already exists",
                    details={"lr_number": data.lr_number, "existing_id": str(existing["_id"])}
                )

            parcel_doc = to_storage(data.dict())
            parcel_doc.update({
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.parcels.insert_one(parcel_doc, session=session)
            parcel_doc["_id"] = result.inserted_id

            await self.audit.log_action("PARCEL", result.inserted_id, "CREATE", user_id,
                                        new_value=parcel_doc, session=session)
            logger.info(f"[TRANSACTION] Parcel created: {data.lr_number}")
            return serialize_doc(parcel_doc)

        return await self.transactions.run(operation, "CREATE_PARCEL")

    async def create_owner(self, data: OwnerCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            owner_doc = to_storage(data.dict())
            owner_doc.update({"created_at": datetime.utcnow(), "created_by": user_id})
            result = await self.db.owners.insert_one(owner_doc, session=session)
            owner_doc["_id"] = result.inserted_id
            await self.audit.log_action("OWNER", result.inserted_id, "CREATE", user_id,
                                        new_value=owner_doc, session=session)
            return serialize_doc(owner_doc)

        return await self.transactions.run(operation, "CREATE_OWNER")

    def _validate_date_range(self, start_date, end_date) -> None:
        if end_date is not None and start_date is not None and end_date <= start_date:
            raise ValidationError(
                error_type="INVALID_DATE_RANGE",
                message=f"end_date {end_date} must be after start_date {start_date}",
                details={"start_date": str(start_date), "end_date": str(end_date)}
            )

    async def add_parcel_owner(self, data: ParcelOwnerCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Link an owner to a parcel. Active shares on a parcel never exceed 100%."""
        self._validate_date_range(data.start_date, data.end_date)

        async def operation(session):
            parcel = await lock_document(self.db.parcels, "Parcel", data.parcel_id, session=session)
            owner = await self.db.owners.find_one({"_id": to_object_id("Owner", data.owner_id)}, session=session)
            if not owner:
                raise NotFoundError("Owner", data.owner_id)

            total = await self.validator.validate_ownership_total(
                str(parcel["_id"]), data.ownership_percentage, is_active=data.is_active, session=session
            )

            link_doc = to_storage(data.dict())
            link_doc.update({
                "parcel_id": str(parcel["_id"]),
                "owner_id": str(owner["_id"]),
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.parcel_owners.insert_one(link_doc, session=session)
            link_doc["_id"] = result.inserted_id

            await self.audit.log_action("PARCEL_OWNER", result.inserted_id, "CREATE", user_id,
                                        new_value=link_doc, session=session)
            logger.info(f"[TRANSACTION] Owner {data.owner_id} linked to parcel {data.parcel_id} (total {total}%)")
            return serialize_doc(link_doc)

        return await self.transactions.run(operation, "ADD_PARCEL_OWNER")

    async def update_parcel_owner(
        self,
        link_id: str,
        data: ParcelOwnerUpdate,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        async def operation(session):
            link = await self.db.parcel_owners.find_one({"_id": to_object_id("ParcelOwner", link_id)}, session=session)
            if not link:
                raise NotFoundError("ParcelOwner", link_id)

            await lock_document(self.db.parcels, "Parcel", link["parcel_id"], session=session)

            changes = to_storage({k: v for k, v in data.dict().items() if v is not None})
            merged = dict(link)
            merged.update(changes)

            self._validate_date_range(merged.get("start_date"), merged.get("end_date"))
            await self.validator.validate_ownership_total(
                link["parcel_id"],
                merged["ownership_percentage"],
                is_active=merged.get("is_active", True),
                exclude_link_id=link["_id"],
                session=session
            )

            changes["updated_at"] = datetime.utcnow()
            await self.db.parcel_owners.update_one({"_id": link["_id"]}, {"$set": changes}, session=session)
            merged.update(changes)

            await self.audit.log_action("PARCEL_OWNER", link["_id"], "UPDATE", user_id,
                                        old_value=link, new_value=changes, session=session)
            return serialize_doc(merged)

        return await self.transactions.run(operation, "UPDATE_PARCEL_OWNER")

    # =========================================================================
    # SUBDIVISIONS & PLOTS
    # =========================================================================

    async def create_subdivision(self, data: SubdivisionCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            parcel = await lock_document(self.db.parcels, "Parcel", data.parcel_id, session=session)

            subdivision_doc = to_storage(data.dict())
            subdivision_doc.update({
                "parcel_id": str(parcel["_id"]),
                "total_plots_created": 0,
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.subdivisions.insert_one(subdivision_doc, session=session)
            subdivision_doc["_id"] = result.inserted_id

            await self.audit.log_action("SUBDIVISION", result.inserted_id, "CREATE", user_id,
                                        new_value=subdivision_doc, session=session)
            return serialize_doc(subdivision_doc)

        return await self.transactions.run(operation, "CREATE_SUBDIVISION")

    async def _ensure_plot_no_free(self, subdivision_id: str, plot_no: str, exclude_id=None, session=None):
        query = {"subdivision_id": subdivision_id, "plot_no": plot_no}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if await self.db.plots.find_one(query, {"_id": 1}, session=session):
            raise ValidationError(
                error_type="DUPLICATE_PLOT_NO",
                message=f"Plot {plot_no} already exists in subdivision {subdivision_id}",
                details={"subdivision_id": subdivision_id, "plot_no": plot_no}
            )

    async def create_plot(self, data: PlotCreate, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a plot in RAW stage.

        Locks the subdivision, then checks plot count and area budget.
        """
        async def operation(session):
            subdivision = await lock_document(self.db.subdivisions, "Subdivision", data.subdivision_id, session=session)
            subdivision_id = str(subdivision["_id"])

            self.validator.validate_plot_capacity(subdivision)
            await self._ensure_plot_no_free(subdivision_id, data.plot_no, session=session)
            await self.validator.validate_subdivision_area(subdivision, data.size_sqm, session=session)

            plot_doc = to_storage(data.dict())
            plot_doc.update({
                "subdivision_id": subdivision_id,
                "size_acres": sqm_to_acres(data.size_sqm),
                "stage": PlotStage.RAW,
                "lock_version": 0,
                "created_by": user_id,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            result = await self.db.plots.insert_one(plot_doc, session=session)
            plot_doc["_id"] = result.inserted_id

            await self.db.subdivisions.update_one(
                {"_id": subdivision["_id"]},
                {"$inc": {"total_plots_created": 1}, "$set": {"updated_at": datetime.utcnow()}},
                session=session
            )

            await self.audit.log_action("PLOT", result.inserted_id, "CREATE", user_id,
                                        new_value=plot_doc, session=session)
            logger.info(f"[TRANSACTION] Plot created: {data.plot_no} in subdivision {subdivision_id}")
            return serialize_doc(plot_doc)

        return await self.transactions.run(operation, "CREATE_PLOT")

    async def update_plot(self, plot_id: str, data: PlotUpdate, user_id: Optional[str] = None) -> Dict[str, Any]:
        async def operation(session):
            plot = await self.db.plots.find_one({"_id": to_object_id("Plot", plot_id)}, session=session)
            if not plot:
                raise NotFoundError("Plot", plot_id)

            subdivision = await lock_document(self.db.subdivisions, "Subdivision", plot["subdivision_id"], session=session)
            changes = {k: v for k, v in data.dict().items() if v is not None}

            if "plot_no" in changes:
                await self._ensure_plot_no_free(plot["subdivision_id"], changes["plot_no"],
                                                exclude_id=plot["_id"], session=session)
            if "size_sqm" in changes:
                if plot["stage"] in PlotStage.COMMERCIAL:
                    raise ConflictError(
                        error_type="PLOT_SIZE_LOCKED",
                        message=f"Cannot resize plot {plot_id} in stage {plot['stage']}",
                        details={"plot_id": plot_id, "stage": plot["stage"]}
                    )
                await self.validator.validate_subdivision_area(
                    subdivision, changes["size_sqm"], exclude_plot_id=plot["_id"], session=session
                )
                changes["size_acres"] = sqm_to_acres(changes["size_sqm"])

            changes["updated_at"] = datetime.utcnow()
            await self.db.plots.update_one({"_id": plot["_id"]}, {"$set": changes}, session=session)

            await self.audit.log_action("PLOT", plot["_id"], "UPDATE", user_id,
                                        old_value=plot, new_value=changes, session=session)
            plot.update(changes)
            return serialize_doc(plot)

        return await self.transactions.run(operation, "UPDATE_PLOT")

    async def delete_plot(self, plot_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Only plots never offered or sold can be removed"""
        async def operation(session):
            plot = await self.db.plots.find_one({"_id": to_object_id("Plot", plot_id)}, session=session)
            if not plot:
                raise NotFoundError("Plot", plot_id)

            subdivision = await lock_document(self.db.subdivisions, "Subdivision", plot["subdivision_id"], session=session)
            plot = await lock_document(self.db.plots, "Plot", plot_id, session=session)

            plot_key = str(plot["_id"])
            has_offers = await self.db.offers_reservations.count_documents({"plot_id": plot_key}, session=session)
            has_agreements = await self.db.sale_agreements.count_documents({"plot_id": plot_key}, session=session)
            if plot["stage"] not in PlotStage.DELETABLE or has_offers or has_agreements:
                raise ConflictError(
                    error_type="PLOT_IN_USE",
                    message=f"Plot {plot_id} has sales history and cannot be deleted",
                    details={"plot_id": plot_id, "stage": plot["stage"],
                             "offers": has_offers, "agreements": has_agreements}
                )

            await self.db.listings.delete_many({"plot_id": plot_key}, session=session)
            await self.db.plots.delete_one({"_id": plot["_id"]}, session=session)
            await self.db.subdivisions.update_one(
                {"_id": subdivision["_id"]},
                {"$inc": {"total_plots_created": -1}, "$set": {"updated_at": datetime.utcnow()}},
                session=session
            )

            await self.audit.log_action("PLOT", plot["_id"], "DELETE", user_id, old_value=plot, session=session)
            logger.info(f"[TRANSACTION] Plot deleted: {plot_id}")
            return {"deleted": True, "plot_id": plot_key}

        return await self.transactions.run(operation, "DELETE_PLOT")

    # =========================================================================
    # MANUAL STAGES
    # =========================================================================

    async def _advance_plot(self, plot_id: str, to_stage: str, context: Dict, user_id: Optional[str]):
        async def operation(session):
            plot = await lock_document(self.db.plots, "Plot", plot_id, session=session)
            result = await self.plot_machine.transition(plot, to_stage, session=session, context=context)
            plot.update(result["handler_result"])
            await self.audit.log_action("PLOT", plot["_id"], "STAGE_CHANGE", user_id,
                                        old_value={"stage": result["from_state"]},
                                        new_value={"stage": to_stage}, session=session)
            return serialize_doc(plot)

        return await self.transactions.run(operation, f"PLOT_{to_stage.upper()}")

    async def mark_plot_surveyed(
        self,
        plot_id: str,
        survey_plan_ref: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._advance_plot(plot_id, PlotStage.SURVEYED, {"survey_plan_ref": survey_plan_ref}, user_id)

    async def mark_plot_ready_for_sale(self, plot_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._advance_plot(plot_id, PlotStage.READY_FOR_SALE, {}, user_id)
