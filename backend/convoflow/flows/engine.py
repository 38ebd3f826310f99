# /convoflow/flows/engine.py

"""
Flow execution engine.

Drives one conversation through a published flow definition, one node at a
time. Nodes that need user input (buttons, carousel, userInput) pause the
flow: the state is saved with waiting_for_input=True and the call returns.
The next inbound message for the conversation resumes it through
execute_flow(..., trigger_message=...).

Every transition is persisted before the next node runs. Calls for the same
conversation are serialized through ConversationLockManager; calls for
different conversations share nothing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from convoflow.config.settings import settings
from convoflow.flows.actions import ActionExecutor
from convoflow.flows.conditions import evaluate_condition
from convoflow.flows.errors import (
    FlowDefinitionError,
    FlowLookupError,
    LockAcquisitionError,
    StartNodeError,
    StatePersistenceError,
)
from convoflow.flows.interfaces import (
    ChannelGateway,
    ConversationStore,
    FlowRepository,
    LeadRepository,
    MessageStore,
)
from convoflow.flows.rendering import build_list_sections, format_buttons, substitute_variables
from convoflow.models.conversation import ChannelType, Conversation, MessageSender, MessageType
from convoflow.models.flow import (
    ActionNode,
    ButtonsNode,
    CarouselNode,
    ConditionNode,
    FlowDefinition,
    ImageNode,
    NodeType,
    TextNode,
    UserInputNode,
    parse_carousel_items,
)
from convoflow.models.state import SELECTED_OPTION_KEY, ConversationState, InputType, utc_now
from convoflow.utils.locks import ConversationLockManager, default_lock_manager
from convoflow.utils.metrics import flow_executions_counter, flow_nodes_counter, outbound_messages_counter

log = structlog.get_logger(__name__)

DEFAULT_BUTTONS_HEADER = "Select an option"
DEFAULT_CAROUSEL_HEADER = "Available options"
CAROUSEL_BODY_TEXT = "Please select an option:"

# Outcomes of execute_flow where no node of the flow ran.
NOT_STARTED_OUTCOMES = frozenset({"flow_not_found", "conversation_not_found", "invalid_definition", "no_start_node"})

Deliver = Callable[[ChannelGateway, str], Awaitable[Optional[str]]]


class TransitionKind(str, Enum):
    ADVANCE = "advance"   # follow the first outgoing edge
    GOTO = "goto"         # jump to an explicit node
    PAUSE = "pause"       # wait for the next inbound message
    HALT = "halt"         # stop without completing


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    target: Optional[str] = None


ADVANCE = Transition(TransitionKind.ADVANCE)
PAUSE = Transition(TransitionKind.PAUSE)
HALT = Transition(TransitionKind.HALT)


@dataclass
class FlowRun:
    """Everything one execute_flow invocation works on."""
    flow_id: str
    conversation: Conversation
    definition: FlowDefinition
    state: ConversationState
    log: Any
    steps: int = 0

    @property
    def conversation_id(self) -> str:
        return self.conversation.id


# One handler per node type; checked against NodeType at import time.
_NODE_HANDLERS: Dict[NodeType, str] = {
    NodeType.TEXT: "_execute_text",
    NodeType.IMAGE: "_execute_image",
    NodeType.BUTTONS: "_execute_buttons",
    NodeType.CAROUSEL: "_execute_carousel",
    NodeType.USER_INPUT: "_execute_user_input",
    NodeType.CONDITION: "_execute_condition",
    NodeType.ACTION: "_execute_action",
}

_missing_handlers = set(NodeType) - set(_NODE_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"Flow engine has no handler for node types: {sorted(t.value for t in _missing_handlers)}")


class FlowEngine:
    def __init__(
        self,
        tenant_id: str,
        *,
        flows: FlowRepository,
        conversations: ConversationStore,
        messages: MessageStore,
        leads: LeadRepository,
        gateway: Optional[ChannelGateway] = None,
        locks: Optional[ConversationLockManager] = None,
        actions: Optional[ActionExecutor] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_auto_steps: Optional[int] = None,
        input_ttl_seconds: Optional[int] = None,
        footer_text: Optional[str] = None,
    ):
        self.tenant_id = tenant_id
        self.flows = flows
        self.conversations = conversations
        self.messages = messages
        self.leads = leads
        self.gateway = gateway
        self.locks = locks or default_lock_manager
        self.actions = actions or ActionExecutor(
            tenant_id,
            leads,
            http_client or httpx.AsyncClient(timeout=settings.action_http_timeout_seconds),
        )
        self.max_auto_steps = max_auto_steps or settings.flow_max_auto_steps
        self.input_ttl_seconds = input_ttl_seconds if input_ttl_seconds is not None else settings.flow_input_ttl_seconds
        self.footer_text = footer_text if footer_text is not None else settings.interactive_footer_text

    # ==================== Entry point ====================

    async def execute_flow(
        self,
        conversation_id: str,
        flow_id: str,
        trigger_message: Optional[str] = None,
        *,
        selected_option: Optional[str] = None,
    ) -> str:
        """
        Runs a conversation through a published flow until it pauses,
        completes or halts.

        trigger_message resumes a paused flow with the user's reply.
        selected_option carries the structured interactive selection extracted
        by the webhook; it is stored under SELECTED_OPTION_KEY before the
        reply is processed.

        Returns the outcome label that is also counted in
        flow_executions_total; NOT_STARTED_OUTCOMES mark runs that never
        reached a node. Never raises: every failure is logged, since callers
        are webhook deliveries that must acknowledge the channel provider.
        """
        bound_log = log.bind(tenant_id=self.tenant_id, conversation_id=conversation_id, flow_id=flow_id)
        try:
            async with self.locks.hold(conversation_id):
                outcome = await self._execute_locked(
                    conversation_id, flow_id, trigger_message, selected_option, bound_log
                )
        except FlowLookupError as e:
            bound_log.error(str(e))
            outcome = e.outcome
        except StartNodeError as e:
            bound_log.error(str(e), candidates=e.candidates)
            outcome = "no_start_node"
        except FlowDefinitionError as e:
            bound_log.error("Flow definition is invalid.", error=str(e))
            outcome = "invalid_definition"
        except LockAcquisitionError as e:
            bound_log.warning("Flow execution skipped; conversation is busy.", error=str(e))
            outcome = "lock_timeout"
        except StatePersistenceError:
            bound_log.error("Flow execution stopped; conversation state could not be saved.", exc_info=True)
            outcome = "persistence_error"
        except Exception:
            bound_log.exception("Error executing flow.")
            outcome = "error"
        flow_executions_counter.labels(outcome=outcome).inc()
        return outcome

    async def _execute_locked(
        self,
        conversation_id: str,
        flow_id: str,
        trigger_message: Optional[str],
        selected_option: Optional[str],
        bound_log: Any,
    ) -> str:
        flow = await self.flows.get_published(flow_id)
        if flow is None:
            raise FlowLookupError("Flow not found or not published.", "flow_not_found")

        conversation = await self.conversations.get(conversation_id)
        if conversation is None:
            raise FlowLookupError("Conversation not found.", "conversation_not_found")

        definition = FlowDefinition.parse(flow.definition)

        state = conversation.get_or_init_flow_state().model_copy(deep=True)

        if state.current_node_id and state.current_flow_id and state.current_flow_id != flow_id:
            bound_log.info("Conversation switches flow; restarting.", previous_flow_id=state.current_flow_id)
            state.restart()
        elif state.completed:
            bound_log.info("Previous run completed; restarting flow.")
            state.restart()

        if state.is_expired(self.input_ttl_seconds):
            bound_log.warning("flow_input_expired", node_id=state.current_node_id, last_updated=str(state.last_updated))
            state.restart()

        if not state.current_node_id:
            state.current_node_id = self._start_node_id(definition)
            state.current_flow_id = flow_id

        run = FlowRun(
            flow_id=flow_id,
            conversation=conversation,
            definition=definition,
            state=state,
            log=bound_log,
        )

        resumed = False
        if trigger_message and state.waiting_for_input:
            await self.process_user_input(run, trigger_message, selected_option=selected_option)
            resumed = True

        return await self._run(run, resumed=resumed)

    @staticmethod
    def _start_node_id(definition: FlowDefinition) -> str:
        roots = definition.root_nodes()
        if len(roots) != 1:
            raise StartNodeError("No unique start node in flow.", [node.id for node in roots])
        return roots[0].id

    # ==================== User input ====================

    async def process_user_input(
        self,
        run: FlowRun,
        user_input: str,
        selected_option: Optional[str] = None,
    ) -> None:
        """
        Binds a reply into the paused flow and clears the wait.

        Does nothing when the flow is not waiting. The wait is cleared and
        persisted even if binding the reply fails, so a conversation never
        stays stuck on a malformed message.
        """
        state = run.state
        if not state.waiting_for_input:
            return

        try:
            run.log.info("Processing user input.", input_type=state.input_type, variable_name=state.variable_name)
            if selected_option:
                state.variables[SELECTED_OPTION_KEY] = selected_option
            if state.input_type and state.variable_name:
                state.variables[state.variable_name] = user_input
            if state.input_type in (InputType.BUTTON, InputType.CAROUSEL_SELECTION):
                if not state.variables.get(SELECTED_OPTION_KEY):
                    state.variables[SELECTED_OPTION_KEY] = user_input
        except Exception:
            run.log.exception("Error processing user input.")
        finally:
            state.clear_wait()
            await self._save_state(run)

    # ==================== Execution loop ====================

    async def _run(self, run: FlowRun, resumed: bool = False) -> str:
        """
        Executes nodes until the flow pauses, completes or halts.

        With resumed=True the current node is the one whose input was just
        processed; execution continues after it instead of running it again.
        """
        state = run.state
        if resumed and await self._move_on(run, self._next_node_id(run, state.current_node_id)):
            return "completed"

        while True:
            node = run.definition.get_node(state.current_node_id)
            if node is None:
                run.log.error("Node not found in flow.", node_id=state.current_node_id)
                return "node_missing"

            run.steps += 1
            if run.steps > self.max_auto_steps:
                run.log.error("Flow exceeded automatic step limit.", node_id=node.id, limit=self.max_auto_steps)
                return "step_limit"

            run.log.info("Executing node.", node_id=node.id, node_type=node.type)
            handler = getattr(self, _NODE_HANDLERS[node.node_type])
            transition = await handler(run, node)
            flow_nodes_counter.labels(node_type=node.type).inc()

            if transition.kind == TransitionKind.PAUSE:
                state.waiting_for_input = True
                await self._save_state(run)
                return "paused"

            if transition.kind == TransitionKind.HALT:
                run.log.info("Flow halted; no edge for branch.", node_id=node.id)
                return "halted"

            if transition.kind == TransitionKind.GOTO:
                next_node_id = transition.target
            else:
                next_node_id = self._next_node_id(run, node.id)

            if await self._move_on(run, next_node_id):
                return "completed"

    @staticmethod
    def _next_node_id(run: FlowRun, node_id: str) -> Optional[str]:
        edges = run.definition.outgoing_edges(node_id)
        return edges[0].target if edges else None

    async def _move_on(self, run: FlowRun, next_node_id: Optional[str]) -> bool:
        """Persists the move to next_node_id. Returns True when the flow is complete."""
        state = run.state
        if next_node_id is None:
            state.clear_wait()
            state.completed = True
            await self._save_state(run)
            run.log.info("Flow execution completed.", node_id=state.current_node_id)
            return True

        state.current_node_id = next_node_id
        await self._save_state(run)
        return False

    # ==================== Node handlers ====================

    async def _execute_text(self, run: FlowRun, node: TextNode) -> Transition:
        text = substitute_variables(node.data.message_text, run.state.variables)
        if not text:
            run.log.warning("Text node has no message.", node_id=node.id)
            return ADVANCE
        await self._send(run, text, MessageType.TEXT, deliver=lambda gw, to: gw.send_text(to, text))
        return ADVANCE

    async def _execute_image(self, run: FlowRun, node: ImageNode) -> Transition:
        image_url = node.data.image_url
        caption = node.data.alt_text or "Image"
        if image_url:
            await self._send(
                run,
                caption,
                MessageType.IMAGE,
                metadata={"imageUrl": image_url},
                deliver=lambda gw, to: gw.send_image(to, image_url, caption),
            )
        else:
            run.log.warning("Image node has no image URL.", node_id=node.id)
        return ADVANCE

    async def _execute_buttons(self, run: FlowRun, node: ButtonsNode) -> Transition:
        text = substitute_variables(node.data.message_text, run.state.variables)
        buttons = format_buttons(node.data.buttons)
        header = node.data.label or DEFAULT_BUTTONS_HEADER

        await self._send(
            run,
            text,
            MessageType.INTERACTIVE,
            metadata={"buttons": [b.model_dump(by_alias=True, exclude_none=True) for b in node.data.buttons or []]},
            deliver=lambda gw, to: gw.send_buttons(to, text, buttons, header, self.footer_text),
        )
        self._await_selection(run.state, InputType.BUTTON)
        return PAUSE

    async def _execute_carousel(self, run: FlowRun, node: CarouselNode) -> Transition:
        config_text = substitute_variables(node.data.carousel_config_text, run.state.variables)
        try:
            items = parse_carousel_items(config_text)
        except FlowDefinitionError as e:
            run.log.error("Invalid carousel configuration; skipping.", node_id=node.id, error=str(e))
            return ADVANCE

        if run.conversation.channel == ChannelType.WHATSAPP:
            sections = build_list_sections(items)
            header = node.data.label or DEFAULT_CAROUSEL_HEADER
            await self._send(
                run,
                "Carousel sent",
                MessageType.INTERACTIVE,
                metadata={"carouselItems": [item.model_dump(by_alias=True, exclude_none=True) for item in items]},
                deliver=lambda gw, to: gw.send_interactive_list(to, header, CAROUSEL_BODY_TEXT, self.footer_text, sections),
            )
        else:
            for item in items:
                if item.title:
                    await self._send(run, item.title, MessageType.TEXT)
                if item.image_url:
                    await self._send(run, item.title or "Image", MessageType.IMAGE, metadata={"imageUrl": item.image_url})
                if item.buttons:
                    await self._send(run, "Options:", MessageType.INTERACTIVE, metadata={"buttons": item.buttons})

        self._await_selection(run.state, InputType.CAROUSEL_SELECTION)
        return PAUSE

    async def _execute_user_input(self, run: FlowRun, node: UserInputNode) -> Transition:
        prompt = substitute_variables(node.data.prompt_text, run.state.variables)
        if prompt:
            await self._send(run, prompt, MessageType.TEXT, deliver=lambda gw, to: gw.send_text(to, prompt))
        else:
            run.log.warning("User input node has no prompt.", node_id=node.id)

        run.state.input_type = InputType.TEXT
        run.state.variable_name = node.data.variable_name
        return PAUSE

    async def _execute_condition(self, run: FlowRun, node: ConditionNode) -> Transition:
        data = node.data
        condition_met = evaluate_condition(run.state.variables, data.variable, data.operator, data.value)
        edges = run.definition.outgoing_edges(node.id)
        run.log.info("Condition evaluated.", node_id=node.id, result=condition_met, edges=len(edges))

        if condition_met and edges:
            return Transition(TransitionKind.GOTO, edges[0].target)
        if not condition_met and len(edges) > 1:
            return Transition(TransitionKind.GOTO, edges[1].target)
        return HALT

    async def _execute_action(self, run: FlowRun, node: ActionNode) -> Transition:
        try:
            await self.actions.execute(node.data, run.state)
        except Exception:
            run.log.exception("Error executing action.", node_id=node.id, action_type=node.data.action_type)
        return ADVANCE

    # ==================== Helpers ====================

    @staticmethod
    def _await_selection(state: ConversationState, input_type: InputType) -> None:
        # A selection left over from an earlier menu must not answer this one.
        state.variables.pop(SELECTED_OPTION_KEY, None)
        state.input_type = input_type
        state.variable_name = None

    def _can_deliver(self, conversation: Conversation) -> bool:
        return (
            self.gateway is not None
            and conversation.channel == ChannelType.WHATSAPP
            and bool(conversation.channel_address)
        )

    async def _send(
        self,
        run: FlowRun,
        content: str,
        message_type: MessageType,
        metadata: Optional[Dict[str, Any]] = None,
        deliver: Optional[Deliver] = None,
    ) -> None:
        """
        Delivers one outbound message (at most one attempt) and records it on
        the conversation timeline. Delivery and recording failures are logged
        and never stop the flow.
        """
        conversation = run.conversation
        channel_message_id = None

        if deliver is not None and self._can_deliver(conversation):
            try:
                channel_message_id = await deliver(self.gateway, conversation.channel_address)
                outbound_messages_counter.labels(message_type=message_type.value, status="sent").inc()
            except Exception as e:
                outbound_messages_counter.labels(message_type=message_type.value, status="failed").inc()
                run.log.error("Outbound message failed.", message_type=message_type.value, error=str(e))
        elif deliver is not None and conversation.channel == ChannelType.WHATSAPP:
            run.log.warning("No WhatsApp gateway or address for conversation; message only recorded.")

        try:
            await self.messages.record(
                conversation.id,
                content,
                message_type,
                MessageSender.AGENT,
                metadata=metadata,
                channel_message_id=channel_message_id,
            )
            await self.conversations.touch(conversation.id, utc_now())
        except Exception as e:
            run.log.error("Failed to record outbound message.", error=str(e))

        if channel_message_id:
            run.state.last_message_id = channel_message_id

    async def _save_state(self, run: FlowRun) -> None:
        state = run.state
        state.version += 1
        state.last_updated = utc_now()
        try:
            await self.conversations.save_flow_state(run.conversation_id, state)
        except Exception as e:
            raise StatePersistenceError(f"Could not save flow state for conversation {run.conversation_id}") from e
        run.conversation.flow_state = state
