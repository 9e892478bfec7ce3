"""
COMMISSION ENGINE

One commission per (agent, sale agreement), created when the agreement
becomes active:
- base_amount = price
- amount = price * commission_rate / 100
- balance = amount
- payable_date = agreement_date + 30 days
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional
import logging

from landsales.core.errors import NotFoundError
from landsales.core.financial_precision import calculate_commission_values
from landsales.core.statuses import CommissionStatus
from landsales.core.dates import add_days
from landsales.core.transactions import to_object_id

logger = logging.getLogger(__name__)

PAYABLE_AFTER_DAYS = 30


class CommissionEngine:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_commission(self, agreement: dict, session=None) -> Optional[dict]:
        """
        Create the pending commission for an agreement's agent.

        Idempotent: returns the existing row when one is already recorded.
        Returns None when the agreement has no agent.
        """
        agent_id = agreement.get("agent_id")
        if not agent_id:
            return None

        agreement_id = str(agreement["_id"])
        existing = await self.db.commissions.find_one(
            {"agent_id": agent_id, "sale_agreement_id": agreement_id},
            session=session
        )
        if existing:
            logger.info(f"[COMMISSION] Already recorded for agent {agent_id} on agreement {agreement_id}")
            return existing

        agent = await self.db.agents.find_one({"_id": to_object_id("Agent", agent_id)}, session=session)
        if not agent:
            raise NotFoundError("Agent", agent_id)

        values = calculate_commission_values(agreement["price"], agent.get("commission_rate", 0))
        commission_doc = {
            "agent_id": agent_id,
            "sale_agreement_id": agreement_id,
            **values,
            "payable_date": add_days(agreement["agreement_date"], PAYABLE_AFTER_DAYS),
            "status": CommissionStatus.PENDING,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }
        result = await self.db.commissions.insert_one(commission_doc, session=session)
        commission_doc["_id"] = result.inserted_id

        logger.info(
            f"[COMMISSION] Created {values['amount']} ({values['rate_applied']}%) "
            f"for agent {agent_id} on agreement {agreement_id}"
        )
        return commission_doc

    async def cancel_pending(self, agreement_id: str, session=None) -> int:
        """Cancel commissions not yet approved or paid. Returns count."""
        result = await self.db.commissions.update_many(
            {"sale_agreement_id": agreement_id, "status": CommissionStatus.PENDING},
            {"$set": {"status": CommissionStatus.CANCELLED, "updated_at": datetime.utcnow()}},
            session=session
        )
        if result.modified_count:
            logger.info(f"[COMMISSION] Cancelled {result.modified_count} pending for agreement {agreement_id}")
        return result.modified_count

    async def create_unique_constraints(self):
        try:
            await self.db.commissions.create_index(
                [("agent_id", 1), ("sale_agreement_id", 1)],
                unique=True,
                name="unique_agent_agreement_commission"
            )
        except Exception as e:
            logger.warning(f"Index creation result: {str(e)}")
