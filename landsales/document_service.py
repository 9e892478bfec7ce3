from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional
import logging

from landsales.models import DocumentUpload
from landsales.audit_service import AuditService
from landsales.serialization import serialize_doc, to_storage
from landsales.core.transactions import MongoTransactionManager
from landsales.core.document_versioning import DocumentVersionManager

logger = logging.getLogger(__name__)


class DocumentService:
    """Document metadata uploads. File bytes live in external storage (file_path)."""

    def __init__(self, db: AsyncIOMotorDatabase, transactions: MongoTransactionManager):
        self.db = db
        self.transactions = transactions
        self.audit = AuditService(db)
        self.versions = DocumentVersionManager(db)

    async def upload_document_version(self, data: DocumentUpload, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Store a document. With parent_document_id set it becomes the new
        current version of that chain; otherwise it starts a new chain.
        """
        async def operation(session):
            document_doc = to_storage(data.dict(exclude={"parent_document_id"}))
            document_doc.update({
                "uploaded_by": data.uploaded_by or user_id,
                "lock_version": 0,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })

            document_doc = await self.versions.insert_version(
                document_doc, parent_id=data.parent_document_id, session=session
            )
            task_id = await self.versions.schedule_expiry_reminder(document_doc, session=session)

            await self.audit.log_action("DOCUMENT", document_doc["_id"], "UPLOAD", user_id,
                                        new_value=document_doc, session=session)
            response = serialize_doc(document_doc)
            response["expiry_task_id"] = str(task_id) if task_id else None
            return response

        return await self.transactions.run(operation, "UPLOAD_DOCUMENT_VERSION")

    async def get_current_version(self, document_id: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(await self.versions.get_current_version(document_id))
