# /convoflow/flows/actions.py

from typing import Any, Dict

import httpx
import structlog

from convoflow.flows.interfaces import LeadRepository
from convoflow.models.flow import (
    ActionNodeData,
    ActionSpec,
    ApiCallAction,
    CreateLeadAction,
    SetVariableAction,
)
from convoflow.models.state import API_RESPONSE_KEY, ConversationState
from convoflow.utils.metrics import flow_actions_counter

log = structlog.get_logger(__name__)


def lead_attributes_from_variables(tenant_id: str, variables: Dict[str, Any]) -> Dict[str, Any]:
    """Maps the variables collected by a flow onto a new CRM lead."""
    return {
        "tenant_id": tenant_id,
        "first_name": variables.get("firstName") or variables.get("name") or "Unknown",
        "last_name": variables.get("lastName") or "",
        "email": variables.get("email"),
        "phone": variables.get("phone"),
        "source": "CHATBOT",
        "status": "NEW",
    }


class ActionExecutor:
    """Runs the side effect of an action node against the conversation state."""

    def __init__(self, tenant_id: str, leads: LeadRepository, http_client: httpx.AsyncClient):
        self.tenant_id = tenant_id
        self.leads = leads
        self.http_client = http_client

    async def execute(self, data: ActionNodeData, state: ConversationState) -> None:
        """
        Executes the parsed action of a node. Nodes whose parameters did not
        parse are skipped with a log line; errors of the side effect propagate.
        """
        action = data.action
        if action is None:
            log.warning("Action node skipped.", action_type=data.action_type, reason=data.parse_error)
            flow_actions_counter.labels(action_type=data.action_type or "none", status="skipped").inc()
            return

        try:
            await self._dispatch(action, state)
        except Exception:
            flow_actions_counter.labels(action_type=action.kind, status="error").inc()
            raise
        flow_actions_counter.labels(action_type=action.kind, status="success").inc()

    async def _dispatch(self, action: ActionSpec, state: ConversationState) -> None:
        if isinstance(action, ApiCallAction):
            await self._api_call(action, state)
        elif isinstance(action, SetVariableAction):
            state.variables[action.name] = action.value
        elif isinstance(action, CreateLeadAction):
            lead_id = await self.leads.create(lead_attributes_from_variables(self.tenant_id, state.variables))
            log.info("Lead created from chatbot flow.", lead_id=lead_id)
        else:
            raise TypeError(f"Unhandled action {action!r}")

    async def _api_call(self, action: ApiCallAction, state: ConversationState) -> None:
        request_kwargs: Dict[str, Any] = {"headers": action.headers}
        if action.body is not None:
            request_kwargs["json"] = action.body

        response = await self.http_client.request(action.method.upper(), action.url, **request_kwargs)
        if not response.is_success:
            log.warning("Flow API call failed.", url=action.url, status_code=response.status_code)
            return

        state.variables[API_RESPONSE_KEY] = response.json()
        log.info("Flow API call stored response.", url=action.url, status_code=response.status_code)
