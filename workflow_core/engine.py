"""
Execution engine: drives one workflow run to a terminal state.

Blocks outside containers form the top-level scope. A block becomes ready
once every upstream block in its scope is terminal; it runs when at least
one incoming edge is active and is skipped otherwise, so a failure only
skips the blocks that depended on it. Loop and parallel containers are not
executed themselves: their body scope is run once per iteration under
virtual identities (see ``workflow_core.identity``).
"""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import jsonschema

from shared.config import WorkflowConfig, config as default_config
from shared.logger import RunLogger, get_logger, get_run_logger

from .context import ExecutionContext, IterationScope
from .errors import ConfigurationError, ExecutionStateError, HandlerExecutionError
from .handlers import ContainerHandler, HandlerRegistry
from .identity import encode
from .schema import (
    BlockDefinition,
    BlockType,
    ContainerSettings,
    EdgeDefinition,
    WorkflowSchema,
    parse_workflow_state,
)
from .state import (
    BlockState,
    BlockStatus,
    ContainerExecution,
    ExecutionSnapshot,
    ExecutionState,
    RunStatus,
    utcnow,
)
from .storage import SnapshotStore

logger = get_logger("workflow_core.engine")

WorkflowLoader = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]
IdentityFn = Callable[[str], str]

CANCELLED_ERROR = "cancelled"


@dataclass
class ExecutionResult:
    run_id: str
    workflow_id: str
    status: RunStatus
    output: Dict[str, Any]
    error: Optional[str]
    snapshot_id: Optional[str]
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    cost: Dict[str, float]
    block_states: Dict[str, BlockState]
    snapshot: Optional[ExecutionSnapshot] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def status_of(self, identity: str) -> BlockStatus:
        return self.block_states[identity].status


class _GraphScope:
    """Blocks executed together (the top level or one container body) and the edges among them."""

    def __init__(self, node_ids: Iterable[str], edges: Iterable[EdgeDefinition]) -> None:
        self.node_ids: List[str] = list(node_ids)
        members = set(self.node_ids)
        self.incoming: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        self.outgoing: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        for edge in edges:
            if edge.source in members and edge.target in members:
                self.incoming[edge.target].append(edge)
                self.outgoing[edge.source].append(edge)

    def sinks(self) -> List[str]:
        return [node_id for node_id in self.node_ids if not self.outgoing[node_id]]


def _identity_factory(iteration: Optional[IterationScope]) -> IdentityFn:
    if iteration is None:
        return lambda node_id: node_id
    return lambda node_id: encode(node_id, iteration.container_id, iteration.index)


class _WorkflowRun:
    """Mutable bookkeeping for one run; owned by a single engine.run call."""

    def __init__(self, engine: "ExecutionEngine", state: ExecutionState, run_logger: RunLogger, depth: int) -> None:
        self.engine = engine
        self.state = state
        self.logger = run_logger
        self.depth = depth

        schema = state.schema
        self.top_scope = _GraphScope(
            [block.id for block in schema.blocks if schema.container_of(block.id) is None],
            schema.edges,
        )
        self.body_scopes: Dict[str, _GraphScope] = {}
        self.container_settings: Dict[str, ContainerSettings] = {}
        # Container defaults are applied once here and never re-derived
        for container_id, loop_meta in schema.loops.items():
            self.container_settings[container_id] = loop_meta.resolve()
            self.body_scopes[container_id] = _GraphScope(schema.body_of(container_id), schema.edges)
        for container_id, parallel_meta in schema.parallels.items():
            self.container_settings[container_id] = parallel_meta.resolve(engine.settings.parallel_max_concurrency)
            self.body_scopes[container_id] = _GraphScope(schema.body_of(container_id), schema.edges)

        self.cancel_reason: Optional[str] = None
        self.config_error: Optional[ConfigurationError] = None
        self._handler_tasks: Set[asyncio.Task] = set()

    @property
    def halted(self) -> bool:
        return self.cancel_reason is not None or self.config_error is not None

    def cancel(self, reason: str) -> None:
        if self.halted:
            return
        self.cancel_reason = reason
        self.logger.warning(f"Cancelling run: {reason}")
        self._cancel_handlers()

    def abort(self, error: ConfigurationError) -> None:
        if self.config_error is not None:
            return
        self.config_error = error
        self.logger.error(f"Configuration error, aborting run: {error}")
        self._cancel_handlers()

    def _cancel_handlers(self) -> None:
        for task in list(self._handler_tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Scope execution
    # ------------------------------------------------------------------
    async def execute(self) -> None:
        for node_id in self.top_scope.node_ids:
            self.state.register(node_id, node_id)
        await self._run_scope(self.top_scope, None)

    async def _run_scope(self, scope: _GraphScope, iteration: Optional[IterationScope]) -> None:
        identity_of = _identity_factory(iteration)
        if iteration is not None:
            for node_id in scope.node_ids:
                self.state.register(
                    identity_of(node_id),
                    node_id,
                    container_id=iteration.container_id,
                    iteration=iteration.index,
                )

        remaining = {node_id: len(scope.incoming[node_id]) for node_id in scope.node_ids}
        ready = deque(node_id for node_id in scope.node_ids if remaining[node_id] == 0)
        running: Dict[asyncio.Future, str] = {}

        def release(node_id: str) -> None:
            for edge in scope.outgoing[node_id]:
                remaining[edge.target] -= 1
                if remaining[edge.target] == 0:
                    ready.append(edge.target)

        try:
            while ready or running:
                while ready:
                    node_id = ready.popleft()
                    identity = identity_of(node_id)
                    if self._should_run(scope, node_id, identity_of):
                        task = asyncio.ensure_future(
                            self._execute_node(scope, node_id, identity, iteration, identity_of)
                        )
                        running[task] = node_id
                    else:
                        self.state.transition(identity, BlockStatus.SKIPPED)
                        self.logger.debug(f"Skipped {identity}")
                        release(node_id)

                if not running:
                    break

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = running.pop(task)
                    task.result()
                    release(node_id)
        finally:
            for task in running:
                task.cancel()

    def _should_run(self, scope: _GraphScope, node_id: str, identity_of: IdentityFn) -> bool:
        if self.halted:
            return False
        edges = scope.incoming[node_id]
        if not edges:
            return True
        return any(self._edge_active(edge, identity_of) for edge in edges)

    def _edge_active(self, edge: EdgeDefinition, identity_of: IdentityFn) -> bool:
        source_identity = identity_of(edge.source)
        if self.state.status_of(source_identity) != BlockStatus.SUCCEEDED:
            return False
        if edge.branch is None:
            return True
        output = self.state.outputs.get(source_identity) or {}
        if "selected_branch" not in output:
            return True
        return output["selected_branch"] == edge.branch

    def _collect_inputs(
        self,
        scope: _GraphScope,
        node_id: str,
        iteration: Optional[IterationScope],
        identity_of: IdentityFn,
    ) -> Dict[str, Dict[str, Any]]:
        inputs: Dict[str, Dict[str, Any]] = {}
        for edge in scope.incoming[node_id]:
            source_identity = identity_of(edge.source)
            if self.state.status_of(source_identity) == BlockStatus.SUCCEEDED:
                inputs[edge.source] = self.state.outputs.get(source_identity, {})
        if iteration is not None and not scope.incoming[node_id]:
            inputs[iteration.container_id] = {"index": iteration.index, "item": iteration.item}
        return inputs

    def _context(
        self, identity: str, block: BlockDefinition, iteration: Optional[IterationScope]
    ) -> ExecutionContext:
        return ExecutionContext(
            identity=identity,
            block=block,
            state=self.state,
            logger=self.logger.bind_block(identity),
            engine=self.engine,
            scope=iteration,
            depth=self.depth,
        )

    def _fail(self, identity: str, error: str) -> None:
        self.state.transition(identity, BlockStatus.FAILED, error=error)

    # ------------------------------------------------------------------
    # Block execution
    # ------------------------------------------------------------------
    async def _execute_node(
        self,
        scope: _GraphScope,
        node_id: str,
        identity: str,
        iteration: Optional[IterationScope],
        identity_of: IdentityFn,
    ) -> None:
        block = self.state.schema.get_block(node_id)
        if block.is_container:
            await self._run_container(block)
            return

        try:
            handler = self.engine.registry.get(block.type)
        except ConfigurationError as exc:
            self._fail(identity, str(exc))
            self.abort(exc)
            return

        if self.halted:
            self.state.transition(identity, BlockStatus.SKIPPED)
            return

        inputs = self._collect_inputs(scope, node_id, iteration, identity_of)
        context = self._context(identity, block, iteration)
        timeout = self.engine.settings.block_timeout_seconds

        self.state.transition(identity, BlockStatus.RUNNING)
        task = asyncio.current_task()
        self._handler_tasks.add(task)
        try:
            config = handler.resolve_config(context)
            output = await asyncio.wait_for(handler.execute(context, config, inputs), timeout=timeout)
            output = dict(output or {})
            self._validate_output(block, output)
        except asyncio.CancelledError:
            if not self.halted:
                raise
            context.logger.warning("Cancelled while running")
            self._fail(identity, CANCELLED_ERROR)
            return
        except asyncio.TimeoutError:
            context.logger.error(f"Timed out after {timeout} seconds")
            self._fail(identity, f"Block timed out after {timeout} seconds")
            return
        except ConfigurationError as exc:
            self._fail(identity, str(exc))
            self.abort(exc)
            return
        except HandlerExecutionError as exc:
            context.logger.error(f"Block failed: {exc}")
            self._fail(identity, str(exc))
            return
        except Exception as exc:
            context.logger.exception(f"Block raised {type(exc).__name__}: {exc}")
            self._fail(identity, f"{type(exc).__name__}: {exc}")
            return
        finally:
            self._handler_tasks.discard(task)

        self.state.set_output(identity, output)
        self.state.transition(identity, BlockStatus.SUCCEEDED)

    @staticmethod
    def _validate_output(block: BlockDefinition, output: Dict[str, Any]) -> None:
        if not block.output_schema:
            return
        try:
            jsonschema.validate(instance=output, schema=block.output_schema)
        except jsonschema.ValidationError as exc:
            raise HandlerExecutionError(f"Output does not match declared schema: {exc.message}") from exc

    # ------------------------------------------------------------------
    # Container expansion
    # ------------------------------------------------------------------
    async def _run_container(self, block: BlockDefinition) -> None:
        identity = block.id
        settings = self.container_settings[block.id]
        context = self._context(identity, block, None)
        if self.halted:
            self.state.transition(identity, BlockStatus.SKIPPED)
            return

        try:
            handler = self.engine.registry.get(block.type)
            if not isinstance(handler, ContainerHandler):
                raise ConfigurationError(f"Handler for '{block.type.value}' cannot expand containers")
            self.state.transition(identity, BlockStatus.RUNNING)
            items = handler.resolve_items(settings, context.variables())
        except ConfigurationError as exc:
            self._fail(identity, str(exc))
            self.abort(exc)
            return

        execution = ContainerExecution(settings=settings, items=items)
        self.state.containers[block.id] = execution
        scope = self.body_scopes[block.id]
        limit = settings.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None
        context.logger.info(
            f"Expanding {block.type.value} into {execution.count} iterations "
            f"(max_concurrency={limit or 'unbounded'})"
        )

        async def run_iteration(index: int) -> None:
            iteration = IterationScope(
                container_id=block.id,
                kind=block.type,
                index=index,
                item=items[index],
                items=items,
            )
            if semaphore is None:
                await self._run_iteration(scope, iteration, execution)
                return
            async with semaphore:
                await self._run_iteration(scope, iteration, execution)

        if limit == 1:
            for index in range(execution.count):
                await run_iteration(index)
        else:
            await asyncio.gather(*(run_iteration(index) for index in range(execution.count)))

        self._finish_container(block, scope, execution)

    async def _run_iteration(
        self, scope: _GraphScope, iteration: IterationScope, execution: ContainerExecution
    ) -> None:
        execution.active += 1
        execution.peak_active = max(execution.peak_active, execution.active)
        try:
            await self._run_scope(scope, iteration)
        finally:
            execution.active -= 1

    def _finish_container(self, block: BlockDefinition, scope: _GraphScope, execution: ContainerExecution) -> None:
        sinks = scope.sinks()
        results: List[Any] = []
        failed_iterations = 0
        for index in range(execution.count):
            identity_of = _identity_factory(
                IterationScope(block.id, block.type, index, execution.items[index], execution.items)
            )
            if any(
                self.state.status_of(identity_of(node_id)) == BlockStatus.FAILED for node_id in scope.node_ids
            ):
                failed_iterations += 1
            sink_outputs = {sink: self.state.outputs.get(identity_of(sink)) for sink in sinks}
            if len(sinks) == 1:
                results.append(sink_outputs[sinks[0]])
            else:
                results.append(sink_outputs)

        self.state.set_output(block.id, {"results": results, "count": execution.count})
        if failed_iterations:
            self._fail(block.id, f"{failed_iterations} of {execution.count} iterations failed")
        elif self.halted:
            self._fail(block.id, CANCELLED_ERROR)
        else:
            self.state.transition(block.id, BlockStatus.SUCCEEDED)

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------
    def outcome(self) -> Tuple[RunStatus, Optional[str]]:
        if self.config_error is not None:
            return RunStatus.FAILED, str(self.config_error)
        if self.cancel_reason is not None:
            return RunStatus.CANCELLED, self.cancel_reason

        failed = [state for state in self.state.blocks.values() if state.status == BlockStatus.FAILED]
        if not failed:
            return RunStatus.SUCCEEDED, None

        schema = self.state.schema
        top_sinks = self.top_scope.sinks()
        for block_state in failed:
            is_response = schema.get_block(block_state.original_id).type == BlockType.RESPONSE
            is_sink = block_state.container_id is None and block_state.original_id in top_sinks
            if is_response or is_sink:
                return RunStatus.FAILED, f"Block '{block_state.identity}' failed: {block_state.error}"

        # A failure that kept a response or every sink from running fails the run too
        first = failed[0]
        responses = [
            node_id for node_id in self.top_scope.node_ids if schema.get_block(node_id).type == BlockType.RESPONSE
        ]
        unanswered = [node_id for node_id in responses if self.state.status_of(node_id) != BlockStatus.SUCCEEDED]
        if unanswered:
            return (
                RunStatus.FAILED,
                f"Response '{unanswered[0]}' did not run because '{first.identity}' failed: {first.error}",
            )
        if not any(self.state.status_of(sink) == BlockStatus.SUCCEEDED for sink in top_sinks):
            return RunStatus.FAILED, f"Block '{first.identity}' failed: {first.error}"
        return RunStatus.SUCCEEDED, None

    def output(self) -> Dict[str, Any]:
        schema = self.state.schema
        responses = {
            node_id: self.state.outputs[node_id]
            for node_id in self.top_scope.node_ids
            if schema.get_block(node_id).type == BlockType.RESPONSE and node_id in self.state.outputs
        }
        if responses:
            return responses
        return {sink: self.state.outputs[sink] for sink in self.top_scope.sinks() if sink in self.state.outputs}


class ExecutionEngine:
    """
    Runs workflow definitions with a frozen handler registry.

    One engine may drive many runs concurrently; each run owns its own
    ExecutionState.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        snapshot_store: Optional[SnapshotStore] = None,
        settings: Optional[WorkflowConfig] = None,
        *,
        workflow_loader: Optional[WorkflowLoader] = None,
    ) -> None:
        self.registry = registry
        self.snapshot_store = snapshot_store
        self.settings = settings or default_config
        self.workflow_loader = workflow_loader
        self._runs: Dict[str, _WorkflowRun] = {}

    @property
    def active_runs(self) -> List[str]:
        return list(self._runs)

    def cancel(self, run_id: str, reason: str = "Run cancelled") -> bool:
        """Cancel an in-flight run. Returns False when the run is not active."""
        workflow_run = self._runs.get(run_id)
        if workflow_run is None:
            logger.info(f"Cancel requested for run {run_id}, which is not active")
            return False
        workflow_run.cancel(reason)
        return True

    async def run(
        self,
        schema: Any,
        *,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        trigger: str = "manual",
        depth: int = 0,
    ) -> ExecutionResult:
        if not isinstance(schema, WorkflowSchema):
            try:
                schema = parse_workflow_state(schema)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid workflow definition for {workflow_id}: {exc}") from exc

        run_id = run_id or str(uuid.uuid4())
        if run_id in self._runs:
            raise ExecutionStateError(f"Run {run_id} is already executing")

        state = ExecutionState(
            run_id=run_id,
            workflow_id=workflow_id,
            schema=schema,
            input_data=dict(input_data or {}),
            trigger=trigger,
        )
        run_logger = get_run_logger(run_id, workflow_id)
        workflow_run = _WorkflowRun(self, state, run_logger, depth)
        self._runs[run_id] = workflow_run

        timeout_handle = None
        if self.settings.workflow_timeout_seconds:
            timeout = self.settings.workflow_timeout_seconds
            timeout_handle = asyncio.get_running_loop().call_later(
                timeout, workflow_run.cancel, f"Workflow timed out after {timeout} seconds"
            )

        run_logger.info(f"Starting run (trigger={trigger}, depth={depth}, blocks={len(schema.blocks)})")
        try:
            await workflow_run.execute()
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()
            self._runs.pop(run_id, None)

        return await self._finalize(workflow_run)

    async def _finalize(self, workflow_run: _WorkflowRun) -> ExecutionResult:
        state = workflow_run.state
        state.ended_at = utcnow()
        state.status, state.error = workflow_run.outcome()

        snapshot = ExecutionSnapshot.from_state(state)
        snapshot_id = None
        if self.snapshot_store is not None:
            try:
                snapshot_id = await self.snapshot_store.save(snapshot)
            except Exception:
                workflow_run.logger.exception("Failed to persist execution snapshot")

        duration_ms = int((state.ended_at - state.started_at).total_seconds() * 1000)
        workflow_run.logger.info(f"Run finished with status={state.status.value} in {duration_ms}ms")

        return ExecutionResult(
            run_id=state.run_id,
            workflow_id=state.workflow_id,
            status=state.status,
            output=workflow_run.output(),
            error=state.error,
            snapshot_id=snapshot_id,
            started_at=state.started_at,
            ended_at=state.ended_at,
            duration_ms=duration_ms,
            cost=dict(state.cost),
            block_states=dict(state.blocks),
            snapshot=snapshot,
        )


__all__ = ["CANCELLED_ERROR", "ExecutionEngine", "ExecutionResult", "WorkflowLoader"]
