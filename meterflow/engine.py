import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .config import AppSettings
from .errors import CyclicGraph, ProviderError, StepTimeout, ValidationError
from .events import EventBus, generation_scope
from .generation_store import GenerationStore
from .registry import ToolContract
from .run_store import RunStore
from .schemas import (
    TERMINAL_STATUSES,
    InputMapping,
    StepDefinition,
    SubmitGenerationRequest,
    SubmitWorkflowRunRequest,
)


logger = logging.getLogger("uvicorn.error")

ResolverResult = Tuple[Dict[str, Any], List[str]]
InputResolver = Callable[[str, str, Dict[str, Any]], Union[ResolverResult, Awaitable[ResolverResult]]]

_MISSING = object()


def topological_order(steps: Sequence[StepDefinition]) -> List[str]:
    """Order steps so every step follows the steps it reads from.

    Raises:
        ValidationError: On duplicate step ids or a mapping to an unknown step.
        CyclicGraph: If the dependencies form a cycle.
    """
    ids = [step.step_id for step in steps]
    if not ids:
        raise ValidationError("A workflow run needs at least one step")
    if len(set(ids)) != len(ids):
        raise ValidationError("Workflow step ids must be unique")
    known = set(ids)
    deps: Dict[str, List[str]] = {}
    for step in steps:
        for source in step.dependencies():
            if source not in known:
                raise ValidationError(f"Step {step.step_id} maps an input from unknown step {source}")
        deps[step.step_id] = step.dependencies()

    remaining = {step_id: len(deps[step_id]) for step_id in ids}
    dependents: Dict[str, List[str]] = {step_id: [] for step_id in ids}
    for step_id, sources in deps.items():
        for source in sources:
            dependents[source].append(step_id)

    ready = [step_id for step_id in ids if remaining[step_id] == 0]
    order: List[str] = []
    while ready:
        step_id = ready.pop(0)
        order.append(step_id)
        for child in dependents[step_id]:
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)
    if len(order) != len(ids):
        raise CyclicGraph(_find_cycle(deps, [step_id for step_id in ids if step_id not in order]))
    return order


def _find_cycle(deps: Dict[str, List[str]], candidates: List[str]) -> List[str]:
    # Every unordered node sits on or behind a cycle; walk dependencies until one repeats.
    path: List[str] = []
    node = candidates[0]
    leftover = set(candidates)
    while node not in path:
        path.append(node)
        node = next(source for source in deps[node] if source in leftover)
    return path[path.index(node):] + [node]


def lookup_field(payload: Any, field: str) -> Any:
    """Read a dotted path (``images.0.url``) from an outputs payload."""
    current = payload
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


class WorkflowEngine:
    """Drives standalone generations and multi-step workflow runs.

    Each run is a background task that submits steps whose dependencies have
    succeeded, waits for their generation records to turn terminal, and writes
    the run outcome. Independent steps run concurrently.
    """

    def __init__(
        self,
        store: GenerationStore,
        runs: RunStore,
        registry: Any,
        bus: EventBus,
        settings: AppSettings,
        *,
        correlator: Optional[Any] = None,
        input_resolver: Optional[InputResolver] = None,
    ) -> None:
        self.store = store
        self.runs = runs
        self.registry = registry
        self.bus = bus
        self.settings = settings
        self.correlator = correlator
        self.input_resolver = input_resolver
        self._tasks: Dict[str, asyncio.Task] = {}

    async def validate(self, steps: Sequence[StepDefinition]) -> List[str]:
        """Check the graph and every tool before anything is written."""
        order = topological_order(steps)
        for step in steps:
            await self.registry.get_invocation_contract(step.tool_id)
        return order

    async def submit_generation(self, request: SubmitGenerationRequest) -> str:
        contract = await self.registry.get_invocation_contract(request.tool_id)
        generation_id = await self._create_record(
            request.account_id,
            contract,
            request.inputs,
            notification_platform=request.notification_platform,
            notification_target=request.notification_target,
        )
        await self._dispatch(generation_id, contract)
        return generation_id

    async def submit_run(self, request: SubmitWorkflowRunRequest) -> str:
        await self.validate(request.steps)
        run_id = await self.runs.create(
            {
                "account_id": request.account_id,
                "definition": [step.model_dump() for step in request.steps],
                "notification_platform": request.notification_platform,
                "notification_target": request.notification_target,
            }
        )
        logger.info("Workflow run %s accepted with %s steps", run_id, len(request.steps))
        self._start(run_id)
        return run_id

    async def resume_incomplete_runs(self) -> List[str]:
        resumed: List[str] = []
        for run in await self.runs.list_running():
            if run["run_id"] in self._tasks:
                continue
            logger.info("Resuming workflow run %s", run["run_id"])
            self._start(run["run_id"])
            resumed.append(run["run_id"])
        return resumed

    async def join(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _start(self, run_id: str) -> None:
        task = asyncio.create_task(self._drive_logged(run_id))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))

    async def _drive_logged(self, run_id: str) -> None:
        try:
            await self.drive_run(run_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            # The run stays running in the store; resume_incomplete_runs picks it up.
            logger.exception("Workflow run %s stopped unexpectedly", run_id)

    async def drive_run(self, run_id: str) -> Dict[str, Any]:
        run = await self.runs.require(run_id)
        steps = [StepDefinition.model_validate(step) for step in run["definition"]]
        by_id = {step.step_id: step for step in steps}
        order = topological_order(steps)
        persisted = run.get("step_statuses") or {}

        outputs: Dict[str, Any] = {}
        failures: Dict[str, Dict[str, Any]] = {}
        running: Dict[str, asyncio.Task] = {}
        pending: List[str] = []
        for step_id in order:
            generation_id = (persisted.get(step_id) or {}).get("generation_id")
            if generation_id:
                # Already submitted before a restart: wait, never resubmit.
                running[step_id] = asyncio.create_task(self._await_step(run_id, step_id, generation_id))
            else:
                pending.append(step_id)

        halted = False
        try:
            while pending or running:
                if not halted:
                    for step_id in list(pending):
                        if all(dep in outputs for dep in by_id[step_id].dependencies()):
                            pending.remove(step_id)
                            running[step_id] = asyncio.create_task(
                                self._run_step(run, by_id[step_id], dict(outputs))
                            )
                if not running:
                    break
                done, _ = await asyncio.wait(list(running.values()), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step_id, record = task.result()
                    running.pop(step_id, None)
                    if record.get("status") == "succeeded":
                        outputs[step_id] = record.get("response_payload")
                    else:
                        failures[step_id] = record
                        if not halted:
                            logger.info(
                                "Workflow run %s halted: step %s ended %s",
                                run_id,
                                step_id,
                                record.get("status"),
                            )
                        halted = True
        finally:
            for task in running.values():
                task.cancel()

        return await self._finish_run(run_id, order, outputs, failures)

    async def _run_step(
        self,
        run: Dict[str, Any],
        step: StepDefinition,
        outputs: Dict[str, Any],
    ) -> Tuple[str, Dict[str, Any]]:
        run_id = run["run_id"]
        try:
            contract = await self.registry.get_invocation_contract(step.tool_id)
        except ValidationError as exc:
            logger.error("Workflow run %s step %s cannot start: %s", run_id, step.step_id, exc)
            await self.runs.set_step(run_id, step.step_id, status="failed")
            return step.step_id, {"status": "failed", "failure_reason": str(exc)}
        generation_id: Optional[str] = None
        try:
            inputs = self.resolve_inputs(step, outputs)
            generation_id = await self._create_record(
                run["account_id"],
                contract,
                inputs,
                run_id=run_id,
                step_id=step.step_id,
            )
            await self.runs.set_step(run_id, step.step_id, generation_id=generation_id, status="pending")
            await self._dispatch(generation_id, contract)
        except Exception as exc:
            return await self._fail_step(run_id, step.step_id, generation_id, exc)
        return await self._await_step(run_id, step.step_id, generation_id)

    async def _await_step(self, run_id: str, step_id: str, generation_id: str) -> Tuple[str, Dict[str, Any]]:
        try:
            record = await self.wait_for_terminal(generation_id)
            await self.runs.set_step(run_id, step_id, status=record["status"])
        except Exception as exc:
            return await self._fail_step(run_id, step_id, generation_id, exc)
        return step_id, record

    async def _fail_step(
        self,
        run_id: str,
        step_id: str,
        generation_id: Optional[str],
        exc: Exception,
    ) -> Tuple[str, Dict[str, Any]]:
        """Turn an unexpected error inside one step into a failed step so the run still finishes."""
        reason = f"internal_error: {type(exc).__name__}: {exc}"
        logger.error("Workflow run %s step %s failed unexpectedly", run_id, step_id, exc_info=exc)
        record: Dict[str, Any] = {"status": "failed", "failure_reason": reason}
        if generation_id is not None:
            result = await self._fail_generation(generation_id, reason)
            existing = result.get("record")
            if existing and existing["status"] in TERMINAL_STATUSES:
                record = existing
        await self.runs.set_step(run_id, step_id, status=record["status"])
        return step_id, record

    async def wait_for_terminal(self, generation_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Suspend until the record is terminal.

        Wakes on the record's terminal event and re-reads the store every
        ``engine_poll_interval_s`` in case the event was published elsewhere.

        Raises:
            StepTimeout: If ``timeout`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        with self.bus.listen(generation_scope(generation_id)) as queue:
            while True:
                record = await self.store.require(generation_id)
                if record["status"] in TERMINAL_STATUSES:
                    return record
                wait_s = self.settings.engine_poll_interval_s
                if deadline is not None:
                    left = deadline - loop.time()
                    if left <= 0:
                        raise StepTimeout(f"Generation {generation_id} not terminal after {timeout}s")
                    wait_s = min(wait_s, left)
                try:
                    # Any event for this record (progress or terminal) triggers a re-read.
                    await asyncio.wait_for(queue.get(), timeout=wait_s)
                except asyncio.TimeoutError:
                    continue

    def resolve_inputs(self, step: StepDefinition, outputs: Dict[str, Any]) -> Dict[str, Any]:
        resolved = dict(step.inputs)
        for name, mapping in step.input_mappings.items():
            resolved[name] = self._mapped_value(step.step_id, name, mapping, outputs.get(mapping.source_step))
        return resolved

    def _mapped_value(self, step_id: str, name: str, mapping: InputMapping, source: Any) -> Any:
        default_field = self.settings.default_output_field
        if mapping.field:
            value = lookup_field(source, mapping.field)
            if value is not _MISSING:
                return value
            logger.warning(
                "Step %s input %r: field %r missing from step %s outputs, falling back to %r",
                step_id,
                name,
                mapping.field,
                mapping.source_step,
                default_field,
            )
        value = lookup_field(source, default_field)
        if value is not _MISSING:
            return value
        logger.warning(
            "Step %s input %r: step %s outputs have no %r field, passing the whole outputs payload",
            step_id,
            name,
            mapping.source_step,
            default_field,
        )
        return source

    async def _resolve_prompt(self, account_id: str, tool_id: str, inputs: Dict[str, Any]) -> ResolverResult:
        if self.input_resolver is None:
            return dict(inputs), []
        result = self.input_resolver(account_id, tool_id, dict(inputs))
        if inspect.isawaitable(result):
            result = await result
        resolved, extra_owners = result
        return dict(resolved), [str(owner) for owner in (extra_owners or [])]

    async def _create_record(
        self,
        account_id: str,
        contract: ToolContract,
        inputs: Dict[str, Any],
        *,
        run_id: Optional[str] = None,
        step_id: Optional[str] = None,
        notification_platform: Optional[str] = None,
        notification_target: Optional[str] = None,
    ) -> str:
        resolved, extra_owners = await self._resolve_prompt(account_id, contract.tool_id, inputs)
        return await self.store.create(
            {
                "account_id": account_id,
                "tool_id": contract.tool_id,
                "request_payload": resolved,
                "cost_rate": {"amount": str(contract.cost_rate.amount), "unit": contract.cost_rate.unit},
                "creator_ids": list(contract.owners) + extra_owners,
                "run_id": run_id,
                "step_id": step_id,
                "notification_platform": notification_platform,
                "notification_target": notification_target,
            }
        )

    async def _dispatch(self, generation_id: str, contract: ToolContract) -> None:
        record = await self.store.require(generation_id)
        try:
            external_run_id = await contract.submit(record["request_payload"])
        except ProviderError as exc:
            logger.error("Provider rejected generation %s: %s", generation_id, exc)
            await self._fail_generation(generation_id, f"provider_error: {exc}")
            return
        await self.store.mark_submitted(generation_id, external_run_id)
        logger.info("Generation %s submitted as external run %s", generation_id, external_run_id)
        if self.correlator is not None:
            # Callbacks that raced ahead of the acknowledgement are waiting in the orphan queue.
            await self.correlator.retry_orphans(external_run_id=external_run_id, force=True)

    async def _fail_generation(self, generation_id: str, reason: str) -> Dict[str, Any]:
        result = await self.store.mark_failed(generation_id, reason)
        if result["ok"]:
            await self.bus.generation_terminal(result["record"])
        return result

    async def _finish_run(
        self,
        run_id: str,
        order: List[str],
        outputs: Dict[str, Any],
        failures: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Any]:
        final_outputs = {
            "result": outputs.get(order[-1]),
            "steps": {step_id: outputs[step_id] for step_id in order if step_id in outputs},
        }
        failure_reason: Optional[str] = None
        if not failures and len(outputs) == len(order):
            status = "completed"
        else:
            status = "partially_completed" if outputs else "failed"
            failure_reason = self._run_failure_reason(failures)
        finished = await self.runs.finish(run_id, status, final_outputs, failure_reason)
        if finished:
            logger.info("Workflow run %s %s", run_id, status)
            await self.bus.run_terminal(run_id, status)
        return await self.runs.require(run_id)

    def _run_failure_reason(self, failures: Dict[str, Dict[str, Any]]) -> str:
        if not failures:
            return "steps were not completed"
        for step_id, record in failures.items():
            if record.get("status") == "payment_failed":
                return f"billing: step {step_id} could not be paid for ({record.get('failure_reason')})"
        step_id, record = next(iter(failures.items()))
        return f"step {step_id} failed: {record.get('failure_reason') or 'unknown error'}"
