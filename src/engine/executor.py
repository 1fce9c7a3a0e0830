"""Plan executor.

Walks a plan with a bounded worker pool. An entry is dispatched only after
every entry it depends on completed successfully; ready entries are
dispatched in rank order. Provider calls go through a tenacity retry policy
that retries TransientProviderError only.

A failed entry taints its existing state record and every transitive
dependent is skipped; unrelated branches continue (on_error: continue) or
dispatch stops (on_error: stop). Objects deposed by create-before-destroy
replacements are deleted after all other entries finish.
"""

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from common import ActionResult
from config import ProviderContext, RetryPolicy
from engine.graph import transitive_closure
from engine.plan import (
    CREATE,
    CREATE_BEFORE_DESTROY,
    DELETE,
    NOOP,
    REPLACE,
    UPDATE,
    Plan,
    PlanEntry,
    Planner,
)
from engine.state import RunState, StateCorruptionError, StateRecord, StateStore
from provider import Provider, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# Seconds between checks for completed work
POLL_INTERVAL = 0.5


@dataclass
class ApplyResult:
    """Outcome of executing a plan.

    Attributes:
        run_state: Per-node status for the run
        plan: The executed plan
        order: Names in the order their actions completed
    """
    run_state: RunState
    plan: Plan
    order: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.run_state.success

    @property
    def exit_code(self) -> int:
        return self.run_state.exit_code


class Executor:
    """Executes plan entries against a provider and records state."""

    def __init__(
        self,
        plan: Plan,
        state: StateStore,
        provider: Provider,
        context: ProviderContext,
        planner: Optional[Planner] = None,
        concurrency: int = 4,
        retry: Optional[RetryPolicy] = None,
        on_error: str = 'continue',
    ):
        self.plan = plan
        self.state = state
        self.provider = provider
        self.context = context
        self.planner = planner
        self.concurrency = max(1, concurrency)
        self.retry = retry or RetryPolicy()
        self.on_error = on_error

        self._cancel = threading.Event()
        self._entries = {e.name: e for e in plan.entries}
        self._dependents: dict[str, list[str]] = {name: [] for name in self._entries}
        for entry in plan.entries:
            for dep in entry.dependencies:
                if dep in self._dependents:
                    self._dependents[dep].append(entry.name)
        self._attempts: dict[str, int] = {}
        self._completed: list[str] = []
        self._deposed: list[str] = []

    def cancel(self) -> None:
        """Stop dispatching new entries; in-flight actions finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> ApplyResult:
        """Execute the plan.

        Returns:
            ApplyResult with the run state and completion order
        """
        verb = 'destroy' if self.plan.destroy else 'apply'
        rs = RunState(self.plan.stack, verb)
        for entry in sorted(self.plan.entries, key=lambda e: e.rank):
            rs.add_node(entry.name).plan(entry.action)
        rs.start()

        waiting = {
            e.name: {d for d in e.dependencies if d in self._entries}
            for e in self.plan.entries
        }
        ready = [(e.rank, e.name) for e in self.plan.entries if not waiting[e.name]]
        heapq.heapify(ready)
        in_flight: dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='iac-worker') as pool:
            while in_flight or (ready and not self._halted(rs)):
                while ready and len(in_flight) < self.concurrency and not self._halted(rs):
                    _, name = heapq.heappop(ready)
                    entry = self._entries[name]
                    ns = rs.get_node(name)

                    if entry.pending and self.planner is not None:
                        self.planner.reclassify(entry)
                    ns.action = entry.action
                    if entry.pending:
                        refs = ', '.join(str(r) for r in entry.pending)
                        self._handle_failure(rs, name, f"Unresolved references: {refs}", ready)
                        continue

                    ns.start()
                    if entry.action == NOOP and not entry.cleanup:
                        ns.complete(entry.prior.identifier if entry.prior else None)
                        self._handle_success(rs, entry, waiting, ready)
                        continue

                    logger.info(f"[{entry.action}] {entry.kind}.{name}")
                    in_flight[pool.submit(self._execute, entry)] = name

                if not in_flight:
                    continue

                done, _ = wait(list(in_flight), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    entry = self._entries[name]
                    ns = rs.get_node(name)
                    try:
                        result = future.result()
                    except StateCorruptionError as e:
                        logger.error(f"State write failed for '{name}': {e}")
                        rs.fatal_error = str(e)
                        ns.fail(str(e))
                        self._update_graph_node(name, 'failed')
                        continue

                    ns.attempts = result.attempts
                    if result.success:
                        if entry.action == DELETE:
                            ns.mark_destroyed()
                        else:
                            ns.complete(result.identifier)
                        logger.info(f"[{entry.action}] {entry.kind}.{name} done ({result.duration:.1f}s)")
                        self._handle_success(rs, entry, waiting, ready)
                    else:
                        self._handle_failure(rs, name, result.message, ready)

            if not self._halted(rs) and self._deposed:
                self._cleanup_deposed(rs)

        reason = 'halted' if rs.fatal_error else 'cancelled'
        for name, ns in rs.nodes.items():
            if not ns.is_terminal:
                ns.skip(reason)
                self._update_graph_node(name, 'skipped')
        rs.cancelled = self.cancelled

        if not self.plan.destroy and not rs.fatal_error and not self.plan.is_empty:
            self._record_apply_order(rs)

        rs.finish()
        logger.info(f"{verb.capitalize()} of '{self.plan.stack}' finished: {rs.summary()}")
        return ApplyResult(run_state=rs, plan=self.plan, order=list(self._completed))

    def _halted(self, rs: RunState) -> bool:
        return self.cancelled or rs.fatal_error is not None

    def _handle_success(self, rs: RunState, entry: PlanEntry,
                        waiting: dict[str, set], ready: list) -> None:
        """Record known values, resolve deferred dependents, release ready ones."""
        self._completed.append(entry.name)
        self._update_graph_node(entry.name, rs.get_node(entry.name).status)
        dependents = [self._entries[d] for d in self._dependents[entry.name]]

        if entry.action != DELETE and self.planner is not None:
            record = self.state.get(entry.name)
            if record is not None:
                self.planner.resolver.record(entry.name, record.values)
            for resolved in self.planner.resolver.propagate(entry.name, dependents):
                self.planner.reclassify(resolved)
                rs.get_node(resolved.name).action = resolved.action

        for dependent in dependents:
            waiting[dependent.name].discard(entry.name)
            ns = rs.get_node(dependent.name)
            if not waiting[dependent.name] and not ns.is_terminal:
                heapq.heappush(ready, (dependent.rank, dependent.name))

    def _handle_failure(self, rs: RunState, name: str, message: str, ready: list) -> None:
        """Fail a node, skip its transitive dependents, stop if configured."""
        rs.get_node(name).fail(message)
        self._update_graph_node(name, 'failed')
        logger.error(f"'{name}' failed: {message}")

        skipped = transitive_closure(name, self._dependents)
        for dep_name in sorted(skipped, key=lambda n: self._entries[n].rank):
            ns = rs.get_node(dep_name)
            if not ns.is_terminal:
                ns.skip(f"dependency '{name}' failed")
                self._update_graph_node(dep_name, 'skipped')
                logger.warning(f"Skipping '{dep_name}': dependency '{name}' failed")
        ready[:] = [item for item in ready if item[1] not in skipped]
        heapq.heapify(ready)

        if self.on_error == 'stop':
            logger.warning("on_error=stop: no further actions will be dispatched")
            self._cancel.set()

    def _update_graph_node(self, name: str, status: str) -> None:
        """Mirror a node's outcome onto the configured resource graph."""
        graph = self.planner.graph if self.planner is not None else None
        if graph is None or name not in graph:
            return
        node = graph.get_node(name)
        node.status = status
        if status == 'applied':
            record = self.state.get(name)
            node.computed = dict(record.outputs) if record else {}

    def _record_apply_order(self, rs: RunState) -> None:
        if self._completed == self.state.apply_order:
            return
        try:
            self.state.set_apply_order(self._completed)
        except StateCorruptionError as e:
            logger.error(f"Failed to record apply order: {e}")
            rs.fatal_error = str(e)

    # Provider calls

    def _call(self, name: str, fn: Callable, *args):
        """Call a provider method under the retry policy.

        Raises:
            ProviderError: When attempts are exhausted or the error is permanent
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(multiplier=self.retry.backoff, max=self.retry.max_backoff),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        def _attempt():
            self._attempts[name] = self._attempts.get(name, 0) + 1
            return fn(self.context, *args)

        return retrying(_attempt)

    def _execute(self, entry: PlanEntry) -> ActionResult:
        """Run one entry in a worker thread.

        Any error other than StateCorruptionError becomes a failed
        ActionResult (and taints the record); StateCorruptionError propagates
        to the dispatcher.
        """
        start = time.time()
        try:
            identifier = self._apply_entry(entry)
        except ProviderError as e:
            return self._failed(entry, e, start)
        except StateCorruptionError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during {entry.action} of '{entry.name}'")
            return self._failed(entry, e, start)

        record = self.state.get(entry.name)
        return ActionResult(
            success=True,
            message=f"{entry.action} {entry.name}",
            duration=time.time() - start,
            identifier=identifier,
            outputs=dict(record.outputs) if record else {},
            attempts=self._attempts.get(entry.name, 0),
        )

    def _failed(self, entry: PlanEntry, error: Exception, start: float) -> ActionResult:
        if self.state.taint(entry.name):
            logger.warning(f"Tainted '{entry.name}' after failed {entry.action}")
        return ActionResult(
            success=False,
            message=f"{type(error).__name__}: {error}",
            duration=time.time() - start,
            attempts=self._attempts.get(entry.name, 0),
        )

    def _apply_entry(self, entry: PlanEntry) -> Optional[str]:
        """Perform the provider calls and state writes for one entry."""
        prior = entry.prior

        if entry.action == DELETE:
            for ident in entry.cleanup:
                self._call(entry.name, self.provider.delete, ident)
            self._call(entry.name, self.provider.delete, prior.identifier)
            self.state.remove(entry.name)
            return prior.identifier

        if entry.action == CREATE:
            return self._create(entry, deposed=[])

        if entry.action == UPDATE:
            computed = self._call(entry.name, self.provider.update, prior.identifier, entry.desired)
            self.state.put(StateRecord(
                name=entry.name,
                kind=entry.kind,
                identifier=prior.identifier,
                attributes=entry.desired,
                outputs={**prior.outputs, **(computed or {})},
                dependencies=list(entry.dependencies),
                deposed=list(prior.deposed),
            ))
            self._queue_cleanup(entry)
            return prior.identifier

        if entry.action == REPLACE:
            if entry.replace_mode == CREATE_BEFORE_DESTROY:
                identifier = self._create(entry, deposed=list(prior.deposed) + [prior.identifier])
                self._deposed.append(entry.name)
                return identifier

            for ident in prior.deposed:
                self._call(entry.name, self.provider.delete, ident)
            self._call(entry.name, self.provider.delete, prior.identifier)
            self.state.remove(entry.name)
            return self._create(entry, deposed=[])

        # no-op with deposed objects left over from an earlier replacement
        self._queue_cleanup(entry)
        return prior.identifier if prior else None

    def _create(self, entry: PlanEntry, deposed: list[str]) -> str:
        identifier, computed = self._call(entry.name, self.provider.create, entry.kind, entry.desired)
        self.state.put(StateRecord(
            name=entry.name,
            kind=entry.kind,
            identifier=identifier,
            attributes=entry.desired,
            outputs=dict(computed or {}),
            dependencies=list(entry.dependencies),
            deposed=deposed,
        ))
        return identifier

    def _queue_cleanup(self, entry: PlanEntry) -> None:
        if entry.cleanup:
            self._deposed.append(entry.name)

    def _cleanup_deposed(self, rs: RunState) -> None:
        """Delete deposed objects, latest completions first."""
        for name in reversed(self._completed):
            if name not in self._deposed or self.cancelled:
                continue
            record = self.state.get(name)
            if record is None or not record.deposed:
                continue

            remaining = []
            for ident in record.deposed:
                try:
                    self._call(name, self.provider.delete, ident)
                    logger.info(f"Deleted deposed object {ident} of '{name}'")
                except Exception as e:
                    logger.error(f"Failed to delete deposed object {ident} of '{name}': {e}")
                    remaining.append(ident)

            record.deposed = remaining
            try:
                self.state.put(record)
            except StateCorruptionError as e:
                rs.fatal_error = str(e)
                return
            if remaining:
                rs.get_node(name).fail(f"Deposed objects not deleted: {', '.join(remaining)}")
                self._update_graph_node(name, 'failed')
