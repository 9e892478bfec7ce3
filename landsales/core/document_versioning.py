"""
DOCUMENT VERSION MANAGER

Document chains:
- a document without parent_document_id starts a chain at version 1
- a new version points at the chain root (never at an intermediate version)
- version = max(version in chain) + 1
- exactly one row per chain has is_current_version = true

Expiring documents get a document_expiry reminder 30 days ahead.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, timedelta
from bson import ObjectId
from typing import Optional
import logging

from landsales.core.errors import ConsistencyError
from landsales.core.statuses import TaskStatus
from landsales.core.transactions import lock_document, to_object_id

logger = logging.getLogger(__name__)

EXPIRY_REMINDER_DAYS = 30


class DocumentVersionManager:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def resolve_chain_root(self, parent_id, session=None) -> dict:
        """Lock and return the root of the chain that parent_id belongs to"""
        parent = await lock_document(self.db.documents, "Document", parent_id, session=session)
        root_id = parent.get("parent_document_id")
        if root_id:
            return await lock_document(self.db.documents, "Document", root_id, session=session)
        return parent

    def _chain_query(self, root_id: ObjectId) -> dict:
        return {"$or": [{"_id": root_id}, {"parent_document_id": str(root_id)}]}

    async def insert_version(self, document_doc: dict, parent_id=None, session=None) -> dict:
        """
        Insert document_doc as the new current version of parent_id's chain
        (or as a new chain when parent_id is None).
        """
        if parent_id is None:
            document_doc.update({
                "version": 1,
                "is_current_version": True,
                "parent_document_id": None
            })
            result = await self.db.documents.insert_one(document_doc, session=session)
            document_doc["_id"] = result.inserted_id
            logger.info(f"[DOCUMENT] New chain {result.inserted_id} v1")
            return document_doc

        root = await self.resolve_chain_root(parent_id, session=session)
        chain_query = self._chain_query(root["_id"])

        max_version = 0
        async for doc in self.db.documents.find(chain_query, {"version": 1}, session=session):
            max_version = max(max_version, doc.get("version", 1))

        await self.db.documents.update_many(
            chain_query,
            {"$set": {"is_current_version": False, "updated_at": datetime.utcnow()}},
            session=session
        )

        document_doc.update({
            "version": max_version + 1,
            "is_current_version": True,
            "parent_document_id": str(root["_id"])
        })
        result = await self.db.documents.insert_one(document_doc, session=session)
        document_doc["_id"] = result.inserted_id

        current_count = await self.db.documents.count_documents(
            {"$and": [chain_query, {"is_current_version": True}]},
            session=session
        )
        if current_count != 1:
            raise ConsistencyError(
                error_type="MULTIPLE_CURRENT_VERSIONS",
                message=f"Document chain {root['_id']} has {current_count} current versions",
                details={
                    "root_document_id": str(root["_id"]),
                    "new_document_id": str(result.inserted_id),
                    "current_versions": current_count
                }
            )

        logger.info(f"[DOCUMENT] Chain {root['_id']} -> v{document_doc['version']} ({result.inserted_id})")
        return document_doc

    async def schedule_expiry_reminder(self, document_doc: dict, session=None) -> Optional[ObjectId]:
        expires_at = document_doc.get("expires_at")
        if not expires_at:
            return None

        task_doc = {
            "title": f"Document expiring: {document_doc.get('title', '')}",
            "description": f"{document_doc.get('doc_type', 'Document')} expires on {expires_at.date().isoformat()}",
            "task_type": "document_expiry",
            "priority": "medium",
            "status": TaskStatus.PENDING,
            "entity_type": "document",
            "entity_id": str(document_doc["_id"]),
            "due_date": expires_at,
            "reminder_date": expires_at - timedelta(days=EXPIRY_REMINDER_DAYS),
            "created_at": datetime.utcnow()
        }
        result = await self.db.tasks_reminders.insert_one(task_doc, session=session)
        return result.inserted_id

    async def get_current_version(self, document_id, session=None) -> Optional[dict]:
        doc = await self.db.documents.find_one({"_id": to_object_id("Document", document_id)}, session=session)
        if not doc:
            return None
        root_id = ObjectId(doc["parent_document_id"]) if doc.get("parent_document_id") else doc["_id"]
        return await self.db.documents.find_one(
            {"$and": [self._chain_query(root_id), {"is_current_version": True}]},
            session=session
        )
