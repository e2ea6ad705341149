class MeterflowError(Exception):
    """Base class for orchestration and accounting errors."""


class ValidationError(MeterflowError):
    """Raised when a submission is rejected before any side effect."""


class CyclicGraph(ValidationError):
    """Raised when a workflow definition contains a dependency cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(f"Workflow steps form a cycle: {' -> '.join(self.cycle)}")


class UnknownTool(ValidationError):
    """Raised when the registry has no invocation contract for a tool."""

    def __init__(self, tool_id: str):
        self.tool_id = tool_id
        super().__init__(f"Unknown tool: {tool_id}")


class NotFound(MeterflowError):
    """Raised when a requested entity does not exist."""


class ProviderError(MeterflowError):
    """Raised when submission to the external compute provider fails."""


class CorrelationOrphan(MeterflowError):
    """Raised when a callback cannot be matched to a generation record."""

    def __init__(self, external_run_id: str):
        self.external_run_id = external_run_id
        super().__init__(f"No generation record for external run {external_run_id}")


class InsufficientFunds(MeterflowError):
    """Raised when a debit would drive an account balance negative."""

    def __init__(self, account_id: str, required, available):
        self.account_id = account_id
        self.required = required
        self.available = available
        super().__init__(f"Account {account_id} has insufficient funds. Required: {required}, Available: {available}.")


class StepTimeout(MeterflowError):
    """Raised when a step receives no terminal callback within its bound."""


class DeliveryError(MeterflowError):
    """Raised by a platform adapter when a hand-off did not go through."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
