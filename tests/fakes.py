import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from meterflow.errors import DeliveryError, ProviderError, UnknownTool
from meterflow.registry import ToolContract
from meterflow.schemas import CostRate, DeliveryOutcome


class FakeContract(ToolContract):
    def __init__(
        self,
        registry: "FakeToolRegistry",
        tool_id: str,
        amount: str = "0.01",
        unit: str = "second",
        owners: Optional[List[str]] = None,
        fail: bool = False,
    ) -> None:
        super().__init__(tool_id, CostRate(amount=Decimal(amount), unit=unit), owners)
        self.registry = registry
        self.fail = fail

    async def submit(self, inputs: Dict[str, Any]) -> str:
        if self.fail:
            raise ProviderError(f"{self.tool_id} is unavailable")
        external_run_id = f"ext-{self.tool_id}-{len(self.registry.submissions) + 1}"
        self.registry.submissions.append(
            {"tool_id": self.tool_id, "external_run_id": external_run_id, "inputs": dict(inputs)}
        )
        return external_run_id


class FakeToolRegistry:
    def __init__(self) -> None:
        self.contracts: Dict[str, FakeContract] = {}
        self.submissions: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, tool_id: str, **kwargs: Any) -> FakeContract:
        contract = FakeContract(self, tool_id, **kwargs)
        self.contracts[tool_id] = contract
        return contract

    async def get_invocation_contract(self, tool_id: str) -> ToolContract:
        contract = self.contracts.get(tool_id)
        if contract is None:
            raise UnknownTool(tool_id)
        return contract

    def external_id_for(self, tool_id: str) -> str:
        for submission in reversed(self.submissions):
            if submission["tool_id"] == tool_id:
                return submission["external_run_id"]
        raise KeyError(tool_id)

    async def close(self) -> None:
        self.closed = True


class FakeDeliveryAdapter:
    platform = "fake"

    def __init__(self, failures: int = 0, retryable: bool = True, crashes: int = 0) -> None:
        self.failures = failures
        self.crashes = crashes
        self.retryable = retryable
        self.deliveries: List[Dict[str, Any]] = []
        self.closed = False

    async def deliver(self, target: str, outcome: DeliveryOutcome) -> None:
        if self.crashes > 0:
            self.crashes -= 1
            raise RuntimeError("adapter bug")
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("platform unavailable", retryable=self.retryable)
        self.deliveries.append({"target": target, "outcome": outcome})

    async def close(self) -> None:
        self.closed = True


def callback(external_run_id: str, status: str, **extra: Any) -> Dict[str, Any]:
    """A provider webhook body in the comfydeploy shape."""
    payload = {"run_id": external_run_id, "status": status, "event_type": "run.updated"}
    payload.update(extra)
    return payload


async def wait_for(
    predicate: Callable[[], Any],
    timeout: float = 5.0,
    interval: float = 0.02,
) -> Any:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
