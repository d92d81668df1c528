"""Exception taxonomy for the execution engine.

Only structural and setup errors (GraphError, WorkflowNotFound,
WorkflowValidationError, ConfigError) are meant to reach the caller of
RunCoordinator.execute_workflow. Node-level errors are converted into
NodeResult data by the runner.
"""


class NodeflowError(Exception):
    """Base class for all engine errors."""

    pass


class GraphError(NodeflowError):
    """Workflow graph is malformed (cycle, unknown edge endpoint, duplicate id)."""

    pass


class NodeTypeNotFound(NodeflowError):
    """No registered executor matches any candidate type key."""

    def __init__(self, message: str, candidates: list[str] | None = None):
        super().__init__(message)
        self.candidates = candidates or []


class NodeTimeoutError(NodeflowError):
    """Executor did not finish within its time budget."""

    def __init__(self, node_id: str, timeout_ms: int):
        super().__init__(f"Node '{node_id}' execution timed out after {timeout_ms}ms")
        self.node_id = node_id
        self.timeout_ms = timeout_ms


class ExecutorError(NodeflowError):
    """Error raised inside an executor."""

    pass


class MigrationError(NodeflowError):
    """A configuration migration step failed."""

    pass


class CancellationError(NodeflowError):
    """Run was stopped by an external request."""

    pass


class WorkflowNotFound(NodeflowError):
    """Workflow id does not exist in the store."""

    pass


class WorkflowValidationError(NodeflowError):
    """Workflow definition was rejected at save time."""

    def __init__(self, errors: list[str]):
        super().__init__("Invalid workflow: " + "; ".join(errors))
        self.errors = errors


class ConfigError(NodeflowError):
    """Engine configuration could not be loaded."""

    pass


class DuplicateRunError(NodeflowError):
    """Run id is already queued, running or recorded."""

    pass
