from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


GenerationStatus = Literal["pending", "submitted", "running", "succeeded", "failed", "payment_failed"]
RunStatus = Literal["running", "completed", "failed", "partially_completed"]

TERMINAL_STATUSES = ("succeeded", "failed", "payment_failed")
ACTIVE_STATUSES = ("pending", "submitted", "running")

# Forward-only ordering of the generation state machine. payment_failed ranks
# above succeeded because a succeeded record may still be rejected at settlement.
STATUS_RANK: Dict[str, int] = {
    "pending": 0,
    "submitted": 1,
    "running": 2,
    "failed": 3,
    "succeeded": 3,
    "payment_failed": 4,
}


class CostRate(BaseModel):
    amount: Decimal = Decimal("0")
    unit: str = "second"


class InputMapping(BaseModel):
    """Reads an input from the outputs of an earlier step."""

    source_step: str
    field: Optional[str] = None


class StepDefinition(BaseModel):
    step_id: str
    tool_id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    input_mappings: Dict[str, InputMapping] = Field(default_factory=dict)

    @field_validator("input_mappings", mode="before")
    @classmethod
    def _coerce_mappings(cls, value: Any) -> Any:
        # "name": "step_a.field" shorthand
        if not isinstance(value, dict):
            return value
        coerced: Dict[str, Any] = {}
        for key, mapping in value.items():
            if isinstance(mapping, str):
                source, _, field = mapping.partition(".")
                coerced[key] = {"source_step": source, "field": field or None}
            else:
                coerced[key] = mapping
        return coerced

    def dependencies(self) -> List[str]:
        seen: List[str] = []
        for mapping in self.input_mappings.values():
            if mapping.source_step not in seen:
                seen.append(mapping.source_step)
        return seen


class SubmitGenerationRequest(BaseModel):
    account_id: str
    tool_id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    notification_platform: Optional[str] = None
    notification_target: Optional[str] = None


class SubmitWorkflowRunRequest(BaseModel):
    account_id: str
    steps: List[StepDefinition]
    notification_platform: Optional[str] = None
    notification_target: Optional[str] = None


class LedgerAdjustmentRequest(BaseModel):
    amount: Decimal
    description: str = ""
    related_generation_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _positive(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("amount must be positive")
        return value


class ProviderEvent(BaseModel):
    """A provider callback normalised to the core's status vocabulary."""

    external_run_id: str
    status: Literal["progress", "running", "succeeded", "failed"]
    outputs: Optional[Any] = None
    failure_reason: Optional[str] = None
    timestamp: Optional[str] = None
    progress: Optional[float] = None
    live_status: Optional[str] = None
    raw_status: Optional[str] = None


class DeliveryOutcome(BaseModel):
    kind: Literal["generation", "run"]
    id: str
    status: Union[GenerationStatus, RunStatus]
    outputs: Optional[Any] = None
    failure_reason: Optional[str] = None
    cost_final: Optional[str] = None
    points_charged: Optional[str] = None
