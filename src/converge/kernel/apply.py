"""Apply executor: run a plan's actions against providers.

Actions run on a bounded thread pool. An action is submitted only once
every action it depends on has succeeded; if one of them failed, was
skipped or was cancelled, the action is skipped and never attempted.
Independent branches of the plan keep going after a failure.

Every successful action writes the state store before the next action
that depends on it can start, so a crash mid-apply loses at most the
in-flight provider calls.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from ..codes import ActionStatus, Operation
from ..config import EngineSettings
from .errors import (
    ApplyError,
    ConvergeError,
    DependencyFailedError,
    ProviderError,
)
from .expressions import lookup_path, resolve_value
from .graph import ResourceGraph, ResourceNode
from .plan import Action, Plan
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)

_NOT_OK = (ActionStatus.FAILED, ActionStatus.SKIPPED, ActionStatus.CANCELLED)


class ActionResult(BaseModel):
    """Outcome of one planned action."""
    key: str
    address: str
    operation: Operation
    replace: bool = False
    status: ActionStatus = ActionStatus.PENDING
    error: Optional[str] = None
    attempts: int = 0
    duration_seconds: float = 0.0


class ApplyReport(BaseModel):
    """Final report of an apply run, in plan order."""
    results: List[ActionResult] = Field(default_factory=list)
    cancelled: bool = False

    def by_status(self, *statuses: ActionStatus) -> List[ActionResult]:
        return [r for r in self.results if r.status in statuses]

    def succeeded(self) -> List[ActionResult]:
        return self.by_status(ActionStatus.SUCCEEDED)

    def failed(self) -> List[ActionResult]:
        return self.by_status(ActionStatus.FAILED)

    def skipped(self) -> List[ActionResult]:
        """Actions never attempted: skipped after an upstream failure, or cancelled."""
        return self.by_status(ActionStatus.SKIPPED, ActionStatus.CANCELLED)

    def get(self, key: str) -> Optional[ActionResult]:
        for result in self.results:
            if result.key == key:
                return result
        return None

    @property
    def ok(self) -> bool:
        return not self.failed() and not self.skipped()

    def raise_for_failures(self) -> None:
        """Raise ApplyError if any action did not succeed."""
        if not self.ok:
            raise ApplyError(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplyExecutor:
    """Executes plans against providers with bounded parallelism.

    Args:
        store: State store; written after every successful action
        providers: Provider name -> provider, used for resources that are
            no longer declared and for nodes built without providers
        settings: Parallelism and retry settings
        sleep: Backoff sleep function (injectable for tests)
    """

    def __init__(
        self,
        store: StateStore,
        providers: Optional[Mapping[str, Any]] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.providers = dict(providers or {})
        self.settings = settings or EngineSettings()
        self.sleep = sleep
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new actions; in-flight provider calls finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _provider_for(self, action: Action, graph: ResourceGraph) -> Any:
        node = graph.get_node(action.address)
        if node is not None:
            name = node.provider_name
            provider = node.provider or self.providers.get(name)
        else:
            record = self.store.get(action.address)
            name = record.provider if record else ""
            provider = self.providers.get(name)
        if provider is None:
            raise ConvergeError(f"{action.address}: provider '{name}' is not configured")
        return provider

    def execute(self, plan: Plan, graph: ResourceGraph) -> ApplyReport:
        """Run every action of ``plan``.

        Raises:
            ConvergeError: Before any provider call, if an action has no provider
        """
        providers = {
            a.key: self._provider_for(a, graph)
            for a in plan.actions
            if a.operation != Operation.NOOP
        }
        results = {
            a.key: ActionResult(key=a.key, address=a.address, operation=a.operation, replace=a.replace)
            for a in plan.actions
        }
        values: Dict[str, Dict[str, Any]] = {
            address: record.values() for address, record in self.store.list().items()
        }
        in_flight: Dict[Future, Action] = {}
        started: Dict[str, float] = {}
        workers = self.settings.parallelism

        def blocking_upstream(action: Action) -> Optional[str]:
            for dep in action.depends_on:
                if results[dep].status in _NOT_OK:
                    return dep
            return None

        def ready(action: Action) -> bool:
            return all(results[dep].status == ActionStatus.SUCCEEDED for dep in action.depends_on)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge-apply") as pool:
            while True:
                progressed = True
                while progressed:
                    progressed = False
                    for action in plan.actions:
                        result = results[action.key]
                        if result.status != ActionStatus.PENDING or action.key in started:
                            continue
                        upstream = blocking_upstream(action)
                        if upstream is not None:
                            result.status = ActionStatus.SKIPPED
                            result.error = str(DependencyFailedError(action.address, results[upstream].address))
                            logger.info("%s skipped: %s did not complete", action.key, upstream)
                            progressed = True
                            continue
                        if self.cancelled or not ready(action):
                            continue
                        if action.operation == Operation.NOOP:
                            self._record_dependencies(graph.get_node(action.address))
                            result.status = ActionStatus.SUCCEEDED
                            progressed = True
                            continue
                        if len(in_flight) >= workers:
                            continue
                        try:
                            attributes = self._resolve(action, graph, values)
                        except ConvergeError as e:
                            result.status = ActionStatus.FAILED
                            result.error = str(e)
                            logger.error("%s failed: %s", action.key, e)
                            progressed = True
                            continue
                        started[action.key] = time.monotonic()
                        logger.info("%s started", action.key)
                        future = pool.submit(
                            self._run, action, graph.get_node(action.address), providers[action.key], attributes, result
                        )
                        in_flight[future] = action

                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    action = in_flight.pop(future)
                    result = results[action.key]
                    result.duration_seconds = round(time.monotonic() - started[action.key], 3)
                    try:
                        record = future.result()
                    except ProviderError as e:
                        result.status = ActionStatus.FAILED
                        result.error = str(e)
                        logger.error("%s failed after %d attempt(s): %s", action.key, result.attempts, e)
                        continue
                    except ConvergeError as e:
                        result.status = ActionStatus.FAILED
                        result.error = str(e)
                        logger.error("%s failed: %s", action.key, e)
                        continue
                    except Exception as e:
                        result.status = ActionStatus.FAILED
                        result.error = f"{type(e).__name__}: {e}"
                        logger.exception("%s failed with an unexpected error", action.key)
                        continue
                    result.status = ActionStatus.SUCCEEDED
                    if record is None:
                        values.pop(action.address, None)
                    else:
                        values[action.address] = record.values()
                    logger.info("%s succeeded in %.3fs", action.key, result.duration_seconds)

        # Anything still pending was never scheduled because of cancellation
        for action in plan.actions:
            result = results[action.key]
            if result.status != ActionStatus.PENDING:
                continue
            upstream = blocking_upstream(action)
            if upstream is not None:
                result.status = ActionStatus.SKIPPED
                result.error = str(DependencyFailedError(action.address, results[upstream].address))
            else:
                result.status = ActionStatus.CANCELLED
                result.error = "run cancelled before this action started"

        return ApplyReport(results=[results[a.key] for a in plan.actions], cancelled=self.cancelled)

    def _resolve(self, action: Action, graph: ResourceGraph, values: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        """Substitute upstream values into a node's attributes just before its call."""
        if action.operation == Operation.DELETE:
            return {}
        node = graph.nodes[action.address]

        def lookup(reference):
            if reference.address not in values:
                raise ConvergeError(f"{action.address}: no value for {reference} (upstream not applied)")
            return lookup_path(values[reference.address], reference)

        attributes = resolve_value(node.attributes, lookup)
        if action.operation == Operation.UPDATE and node.lifecycle.ignore_changes:
            record = self.store.get(action.address)
            for name in node.lifecycle.ignore_changes:
                if record is not None and name in record.attributes:
                    attributes[name] = record.attributes[name]
        return attributes

    def _call(self, action: Action, result: ActionResult, fn: Callable[[], Any]) -> Any:
        """Call a provider operation, retrying retryable errors with backoff."""
        delay = self.settings.retry_backoff_seconds
        while True:
            result.attempts += 1
            try:
                return fn()
            except ProviderError as e:
                retries_left = self.settings.max_retries - (result.attempts - 1)
                if not e.retryable or retries_left <= 0 or self.cancelled:
                    raise
                logger.warning(
                    "%s attempt %d failed (%s); retrying in %.2fs", action.key, result.attempts, e, delay
                )
                self.sleep(delay)
                delay *= 2

    def _record_dependencies(self, node: Optional[ResourceNode]) -> None:
        """Bring a no-op record's dependency edges up to date."""
        if node is None:
            return
        record = self.store.get(node.address)
        dependencies = _dependencies(node)
        if record is None or list(record.dependencies) == dependencies:
            return
        self.store.put(node.address, record.model_copy(update={"dependencies": dependencies}))

    def _run(
        self,
        action: Action,
        node: Optional[ResourceNode],
        provider: Any,
        attributes: Dict[str, Any],
        result: ActionResult,
    ) -> Optional[StateRecord]:
        """Worker body. Returns the new record, or None after a delete."""
        if action.operation == Operation.DELETE:
            record = self.store.get(action.address)
            if record is None:
                return None
            self._call(action, result, lambda: provider.delete(record.type, record.identifiers))
            self.store.delete(action.address)
            return None

        assert node is not None
        now = _utcnow()
        dependencies = _dependencies(node)

        if action.operation == Operation.CREATE:
            try:
                created = self._call(action, result, lambda: provider.create(node.type, attributes))
            except ProviderError as e:
                if e.partial_identifiers:
                    logger.warning("%s partially created; recording it as tainted", action.address)
                    self.store.put(action.address, StateRecord(
                        address=action.address, type=node.type, name=node.name, provider=node.provider_name,
                        attributes=attributes, identifiers=e.partial_identifiers, dependencies=dependencies,
                        tainted=True, created_at=now, updated_at=now,
                    ))
                raise
            record = StateRecord(
                address=action.address, type=node.type, name=node.name, provider=node.provider_name,
                attributes=attributes, identifiers=created.identifiers, outputs=created.outputs,
                dependencies=dependencies, created_at=now, updated_at=now,
            )
            self.store.put(action.address, record)
            return record

        prior = self.store.get(action.address)
        if prior is None:
            raise ConvergeError(f"{action.address}: cannot update, no state record")
        outputs = self._call(action, result, lambda: provider.update(node.type, prior.identifiers, attributes))
        record = prior.model_copy(update={
            "attributes": attributes,
            "outputs": dict(outputs or prior.outputs),
            "dependencies": dependencies,
            "updated_at": now,
        })
        self.store.put(action.address, record)
        return record


def _dependencies(node: ResourceNode) -> List[str]:
    return sorted(set(r.address for r in node.references()) | set(node.depends_on))
