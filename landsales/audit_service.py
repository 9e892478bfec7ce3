from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from landsales.serialization import serialize_doc

logger = logging.getLogger(__name__)


class AuditService:
    """Insert-only audit trail (activities_audit), written inside command transactions"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.activities_audit

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        """
        Log an action to the audit trail (INSERT ONLY).

        Runs in the caller's transaction: a failed audit write aborts the command.
        """
        audit_entry = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action_type": action_type,
            "old_value_json": serialize_doc(old_value),
            "new_value_json": serialize_doc(new_value),
            "user_id": user_id or "SYSTEM",
            "created_at": datetime.utcnow()
        }
        await self.collection.insert_one(audit_entry, session=session)
        logger.debug(f"Audit log created: {action_type} on {entity_type}:{entity_id}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        query = {}
        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = str(entity_id)

        logs = await self.collection.find(
            query, sort=[("created_at", -1)], limit=limit
        ).to_list(length=None)
        return [serialize_doc(log) for log in logs]
