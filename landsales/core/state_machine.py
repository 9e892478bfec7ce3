"""
STATUS STATE MACHINE

One machine per status-bearing collection (plots, listings, offers,
sale agreements). Provides:
1. Registered (from, to) edges with an async handler each
2. Optional async guard per edge, checked before the handler runs
3. Rejection of unregistered edges as ConflictError
4. Handler failures that are not engine errors wrapped as ConsistencyError

Usage:
    offers = StateMachine("offer")
    offers.register("reserved", "accepted", handle_accept, guard=plot_is_free)

    # with the plot locked, inside run(operation)
    await offers.transition(offer_doc, "accepted", session=session, context={"plot": plot})
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple
from datetime import datetime
import logging

from landsales.core.errors import LandSalesError, ConflictError, ConsistencyError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(ConflictError):
    """The requested status change is not an edge of the machine."""

    def __init__(self, entity: str, current: str, requested: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = current
        self.to_state = requested
        self.allowed = sorted(allowed or [])
        super().__init__(
            error_type="INVALID_TRANSITION",
            message=f"{entity} cannot move from '{current}' to '{requested}' (allowed: {self.allowed or 'none'})",
            details={"entity": entity, "from_state": current, "to_state": requested, "allowed": self.allowed}
        )


class GuardConditionError(ConflictError):
    """The edge exists but its guard refused it for this row."""

    def __init__(self, entity: str, current: str, requested: str, reason: str):
        self.reason = reason
        super().__init__(
            error_type="TRANSITION_BLOCKED",
            message=f"{entity} '{current}' -> '{requested}' blocked: {reason}",
            details={"entity": entity, "from_state": current, "to_state": requested, "reason": reason}
        )


class TransitionHandlerError(ConsistencyError):
    """A handler failed with something other than an engine error."""

    def __init__(self, entity: str, current: str, requested: str, cause: Exception):
        self.original_error = cause
        super().__init__(
            error_type="TRANSITION_HANDLER_FAILED",
            message=f"{entity} '{current}' -> '{requested}' handler failed: {cause}",
            details={"entity": entity, "from_state": current, "to_state": requested}
        )


# handler(entity_doc, context, session) -> fields written
TransitionHandler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Dict[str, Any]]]

# guard(entity_doc, context, session) -> (allowed, reason)
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Tuple[bool, str]]]


class Transition:

    __slots__ = ("from_state", "to_state", "handler", "guard", "description")

    def __init__(self, from_state: str, to_state: str, handler: TransitionHandler,
                 guard: Optional[GuardCondition] = None, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.handler = handler
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"<Transition {self.from_state}->{self.to_state}>"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Edges are kept as {from_state: {to_state: Transition}}.

    Handlers persist the status change themselves (usually the dict from
    get_status_update) plus any cascaded writes, in the caller's session.
    """

    def __init__(self, entity_name: str, status_field: str = "status"):
        self.entity_name = entity_name
        self.status_field = status_field
        self._edges: Dict[str, Dict[str, Transition]] = {}

    def register(
        self,
        from_state: str,
        to_state: str,
        handler: TransitionHandler,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "StateMachine":
        targets = self._edges.setdefault(from_state, {})
        if to_state in targets:
            logger.warning(f"[STATE_MACHINE] {self.entity_name}: replacing edge {from_state} -> {to_state}")
        targets[to_state] = Transition(from_state, to_state, handler, guard, description)
        self._edges.setdefault(to_state, {})
        return self

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        return list(self._edges.get(from_state, {}))

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return to_state in self._edges.get(from_state, {})

    def validate_transition(self, from_state: str, to_state: str) -> Transition:
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                self.entity_name, from_state, to_state, self.get_allowed_transitions(from_state)
            )
        return self._edges[from_state][to_state]

    async def check_guard(
        self,
        entity_doc: Dict[str, Any],
        from_state: str,
        to_state: str,
        context: Dict[str, Any],
        session: Any = None
    ) -> None:
        edge = self._edges.get(from_state, {}).get(to_state)
        if edge is None or edge.guard is None:
            return
        allowed, reason = await edge.guard(entity_doc, context, session)
        if not allowed:
            raise GuardConditionError(self.entity_name, from_state, to_state, reason)

    async def transition(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validate, guard and apply a status change.

        Returns {from_state, to_state, handler_result, transitioned_at}.
        Engine errors raised by guards or handlers propagate unchanged.
        """
        context = context or {}
        from_state = entity_doc.get(self.status_field)

        edge = self.validate_transition(from_state, to_state)
        await self.check_guard(entity_doc, from_state, to_state, context, session)

        try:
            written = await edge.handler(entity_doc, context, session)
        except LandSalesError:
            raise
        except Exception as e:
            logger.error(f"[STATE_MACHINE] {self.entity_name} {entity_doc.get('_id')} {from_state} -> {to_state}: {e}")
            raise TransitionHandlerError(self.entity_name, from_state, to_state, e)

        logger.info(f"[STATE_MACHINE] {self.entity_name} {entity_doc.get('_id')}: {from_state} -> {to_state}")
        return {
            "from_state": from_state,
            "to_state": to_state,
            "handler_result": written or {},
            "transitioned_at": datetime.utcnow()
        }

    def get_status_update(self, to_state: str) -> Dict[str, Any]:
        """$set payload for the status field, its change time and updated_at"""
        now = datetime.utcnow()
        return {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": now,
            "updated_at": now
        }

    def get_states(self) -> List[str]:
        return sorted(self._edges)

    def get_graph(self) -> Dict[str, List[str]]:
        return {state: list(targets) for state, targets in self._edges.items()}

    def __repr__(self):
        edge_count = sum(len(targets) for targets in self._edges.values())
        return f"StateMachine({self.entity_name}, {len(self._edges)} states, {edge_count} edges)"
