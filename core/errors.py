"""
Error taxonomy for the flow engine.

Only GraphIntegrityError escapes to callers (at flow activation). Every
other error is raised and absorbed inside the engine: node handlers turn
them into a Terminate, a fallback edge, or a re-prompt.
"""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for all engine errors."""


class GraphIntegrityError(FlowEngineError):
    """Flow definition is structurally invalid; blocks activation."""

    def __init__(self, flow_id: str, problems: list[str]):
        self.flow_id = flow_id
        self.problems = problems
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(problems)}")


class UnknownFlowError(FlowEngineError):
    def __init__(self, flow_id: str, version: int = None):
        self.flow_id = flow_id
        self.version = version
        suffix = f" version {version}" if version is not None else ""
        super().__init__(f"Flow '{flow_id}'{suffix} is not loaded")


class ConditionSyntaxError(FlowEngineError):
    """Malformed edge condition. Logged; the edge is treated as non-matching."""

    def __init__(self, expression: str, reason: str, position: int = -1):
        self.expression = expression
        self.reason = reason
        self.position = position
        where = f" at {position}" if position >= 0 else ""
        super().__init__(f"{reason}{where} in condition {expression!r}")


class ConditionAllFalseError(FlowEngineError):
    """No outgoing edge matched and no default edge exists."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"No outgoing edge of node '{node_id}' matched")


class InputValidationError(FlowEngineError):
    def __init__(self, validation: str, value: str):
        self.validation = validation
        self.value = value
        super().__init__(f"Value {value!r} failed '{validation}' validation")


class ApiRequestError(FlowEngineError):
    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        self.response = None
        super().__init__(message)


class ApiRequestTimeoutError(ApiRequestError):
    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        super().__init__(f"Request to {url} timed out after {timeout}s")


class IdleTimeoutError(FlowEngineError):
    def __init__(self, conversation_id: str, idle_seconds: float):
        self.conversation_id = conversation_id
        self.idle_seconds = idle_seconds
        super().__init__(
            f"Conversation {conversation_id} idle for more than {idle_seconds}s"
        )
