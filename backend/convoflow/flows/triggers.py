# /convoflow/flows/triggers.py

from typing import Callable, List, Optional

import structlog

from convoflow.flows.engine import NOT_STARTED_OUTCOMES, FlowEngine
from convoflow.flows.interfaces import FlowRepository
from convoflow.models.conversation import ChatbotFlow, TriggerType
from convoflow.utils.metrics import flow_triggers_counter

log = structlog.get_logger(__name__)


def matches_trigger(flow: ChatbotFlow, message: Optional[str], trigger: TriggerType) -> bool:
    """keyword_detected needs a case-insensitive keyword substring; other triggers always match."""
    if trigger == TriggerType.KEYWORD_DETECTED:
        text = (message or "").lower()
        return any(keyword and keyword.lower() in text for keyword in flow.trigger_keywords or [])
    return True


class TriggerResolver:
    """Chooses which published flow an inbound event starts."""

    def __init__(self, flows: FlowRepository):
        self.flows = flows

    async def candidates(self, trigger: TriggerType) -> List[ChatbotFlow]:
        return await self.flows.list_published(trigger)

    async def resolve(self, message: Optional[str], trigger: TriggerType) -> Optional[ChatbotFlow]:
        """First published flow (storage order) whose trigger matches the message."""
        for flow in await self.candidates(trigger):
            if matches_trigger(flow, message, trigger):
                return flow
        return None


async def find_and_execute_triggered_flows(
    tenant_id: str,
    conversation_id: str,
    message: Optional[str],
    trigger: TriggerType,
    engine_factory: Optional[Callable[[str], FlowEngine]] = None,
) -> Optional[str]:
    """
    Runs the first published flow of the tenant matching the trigger.

    Returns the id of the flow that was executed. Returns None when nothing
    matched or when the matched flow could not start (missing conversation,
    unparseable definition, no unique start node), so the caller can fall
    back to another trigger. Never raises.
    """
    if engine_factory is None:
        from convoflow.services.flow_service import build_engine as engine_factory

    bound_log = log.bind(tenant_id=tenant_id, conversation_id=conversation_id, trigger=trigger.value)
    try:
        engine = engine_factory(tenant_id)
        flow = await TriggerResolver(engine.flows).resolve(message, trigger)
        if flow is None:
            flow_triggers_counter.labels(trigger=trigger.value, matched="false").inc()
            bound_log.debug("No flow matched trigger.")
            return None

        flow_triggers_counter.labels(trigger=trigger.value, matched="true").inc()
        bound_log.info("Flow triggered.", flow_id=flow.id, flow_name=flow.name)
        outcome = await engine.execute_flow(conversation_id, flow.id, message)
        if outcome in NOT_STARTED_OUTCOMES:
            bound_log.warning("Triggered flow did not start.", flow_id=flow.id, outcome=outcome)
            return None
        return flow.id
    except Exception:
        bound_log.exception("Error finding and executing triggered flows.")
        return None

