# /convoflow/flows/errors.py

"""Exception types raised inside the flow engine and its collaborators."""


class FlowError(Exception):
    """Base class for flow engine errors."""


class FlowDefinitionError(FlowError):
    """The stored flow definition cannot be executed as written."""


class StartNodeError(FlowDefinitionError):
    """No unique start node (node without incoming edges) exists."""

    def __init__(self, message: str, candidates: list[str]):
        super().__init__(message)
        self.candidates = candidates


class FlowLookupError(FlowError):
    """The flow or the conversation could not be found for the tenant."""

    def __init__(self, message: str, outcome: str):
        super().__init__(message)
        self.outcome = outcome


class ChannelGatewayError(FlowError):
    """An outbound channel message could not be delivered."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StatePersistenceError(FlowError):
    """Conversation state could not be written; execution must not continue."""


class LockAcquisitionError(FlowError):
    """The per-conversation lock could not be acquired in time."""
