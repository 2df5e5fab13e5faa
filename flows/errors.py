"""
Error taxonomy for flow execution.

    FlowError
    ├── GraphError              (structural; fatal to the session)
    │   ├── MissingStartError
    │   ├── DanglingEdgeError
    │   ├── OrphanNodeError
    │   ├── DuplicateHandleError
    │   ├── InvalidNodeError
    │   ├── UnknownNodeError
    │   └── GraphValidationError  (aggregate, raised at bot registration)
    ├── ExternalCallError       (retryable side-effect failure)
    ├── ExecutionBudgetExceeded
    ├── DuplicateActiveSession
    └── UnknownBotError
"""
from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base exception for flow engine operations."""


# ══════════════════════════════════════════════════════════════
#  GRAPH ERRORS
# ══════════════════════════════════════════════════════════════

class GraphError(FlowError):
    code = "graph_error"

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class MissingStartError(GraphError):
    code = "missing_start"


class DanglingEdgeError(GraphError):
    code = "dangling_edge"


class OrphanNodeError(GraphError):
    code = "orphan_node"


class DuplicateHandleError(GraphError):
    code = "duplicate_handle"


class InvalidNodeError(GraphError):
    code = "invalid_node"


class UnknownNodeError(GraphError):
    code = "unknown_node"


class GraphValidationError(GraphError):
    """All blocking issues found in a graph, raised together."""
    code = "graph_invalid"

    def __init__(self, errors: list[GraphError]):
        self.errors = errors
        summary = "; ".join(str(e) for e in errors)
        super().__init__(f"Invalid flow graph: {summary}")


# ══════════════════════════════════════════════════════════════
#  RUNTIME ERRORS
# ══════════════════════════════════════════════════════════════

class ExternalCallError(FlowError):
    """An outbound call (API, webhook, booking, email) failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class ExecutionBudgetExceeded(FlowError):
    def __init__(self, steps: int, node_id: Optional[str] = None):
        self.steps = steps
        self.node_id = node_id
        super().__init__(f"Execution budget of {steps} steps exceeded at node {node_id}")


class DuplicateActiveSession(FlowError):
    def __init__(self, bot_id: str, user_id: str, session_id: str):
        self.bot_id = bot_id
        self.user_id = user_id
        self.session_id = session_id
        super().__init__(f"Active session {session_id} already exists for bot={bot_id} user={user_id}")


class UnknownBotError(FlowError):
    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        super().__init__(f"Unknown bot: {bot_id}")
