import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .config import ToolConfig
from .errors import ProviderError, UnknownTool
from .schemas import CostRate


logger = logging.getLogger("uvicorn.error")


class ProviderClient:
    """Submits jobs to the external compute provider."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, webhook_url: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(
            timeout=30,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    async def submit(self, endpoint: str, inputs: Dict[str, Any]) -> str:
        """Queue one job and return the provider's run id.

        Raises:
            ProviderError: If the provider rejects the job or cannot be reached.
        """
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}/{endpoint.lstrip('/')}"
        payload: Dict[str, Any] = {"inputs": inputs}
        if self.webhook_url:
            payload["webhook"] = self.webhook_url
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"Provider returned HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise ProviderError(f"Provider request failed: {e}") from e
        except ValueError as e:
            raise ProviderError("Provider returned a non-JSON response") from e
        run_id = data.get("run_id") if isinstance(data, dict) else None
        if not run_id:
            raise ProviderError("Provider response did not include a run_id")
        return str(run_id)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class ToolContract(ABC):
    """How to invoke one tool: its cost rate, its owners and a submit call."""

    def __init__(self, tool_id: str, cost_rate: CostRate, owners: Optional[List[str]] = None):
        self.tool_id = tool_id
        self.cost_rate = cost_rate
        self.owners = list(owners or [])

    @abstractmethod
    async def submit(self, inputs: Dict[str, Any]) -> str:
        """Start the job and return the provider's external run id."""


class HttpToolContract(ToolContract):
    def __init__(
        self,
        tool_id: str,
        cost_rate: CostRate,
        owners: Optional[List[str]],
        endpoint: str,
        client: ProviderClient,
    ):
        super().__init__(tool_id, cost_rate, owners)
        self.endpoint = endpoint
        self.client = client

    async def submit(self, inputs: Dict[str, Any]) -> str:
        return await self.client.submit(self.endpoint or self.tool_id, inputs)


class StaticToolRegistry:
    """Tool contracts built from the ``tools`` section of the settings."""

    def __init__(self, tools: Dict[str, ToolConfig], client: ProviderClient):
        self.tools = dict(tools)
        self.client = client

    async def get_invocation_contract(self, tool_id: str) -> ToolContract:
        tool = self.tools.get(tool_id)
        if tool is None:
            raise UnknownTool(tool_id)
        rate = CostRate(amount=tool.cost_rate.amount, unit=tool.cost_rate.unit)
        return HttpToolContract(tool_id, rate, tool.owners, tool.endpoint, self.client)

    async def close(self) -> None:
        await self.client.close()
