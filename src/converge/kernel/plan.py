"""Plan engine: diff desired state against recorded state.

A plan is an ordered list of actions. Each action names the actions that
must complete before it (``depends_on``); the list order is one valid
sequential execution of that partial order.

Ordering rules:
- create/update/noop of a node come after the actions of everything the
  node depends on, in topological order of the resource graph
- deletes of resources that are no longer declared come after the deletes
  of their recorded dependents, and after the actions of declared resources
  that depended on them at the last apply
- a replaced node is deleted after its recorded dependents and then
  created; a declared dependent recorded against a replaced node is
  replaced too, so nothing is deleted while a live object points at it
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..codes import Operation
from .errors import PlanError, ResourceNotFoundError
from .expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    lookup_path,
    resolve_value,
    to_display,
)
from .graph import ResourceGraph, ResourceNode
from .resolver import reverse_topological_order, topological_order
from .state import StateRecord
from .._internal.canonical_json import canonical_equal

logger = logging.getLogger(__name__)


class AttributeChange(BaseModel):
    """One attribute that differs between recorded and desired state."""
    model_config = ConfigDict(frozen=True)

    name: str
    before: Any = None
    after: Any = None  # "(known after apply)" when not yet known
    requires_replace: bool = False


class Action(BaseModel):
    """A planned operation on one resource. Immutable once planned."""
    model_config = ConfigDict(frozen=True)

    key: str  # "{operation}:{address}"
    address: str
    resource_type: str
    operation: Operation
    replace: bool = False  # Half of a delete + create pair
    reason: str = ""
    changes: Tuple[AttributeChange, ...] = ()
    depends_on: Tuple[str, ...] = ()
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


def action_key(operation: Operation, address: str) -> str:
    return f"{operation.value}:{address}"


@dataclass
class Plan:
    """Ordered actions for one run."""
    actions: List[Action] = field(default_factory=list)
    destroy: bool = False

    def get(self, key: str) -> Optional[Action]:
        for action in self.actions:
            if action.key == key:
                return action
        return None

    def changes(self) -> List[Action]:
        """Actions that call a provider (everything but noop), in plan order."""
        return [a for a in self.actions if a.operation != Operation.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes())

    def summary(self) -> Dict[str, int]:
        """Count of actions per operation; a replace counts once as "replace"."""
        counts = {"create": 0, "update": 0, "delete": 0, "replace": 0, "noop": 0}
        for action in self.actions:
            if action.replace:
                if action.operation == Operation.CREATE:
                    counts["replace"] += 1
            else:
                counts[action.operation.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destroy": self.destroy,
            "summary": self.summary(),
            "actions": [a.model_dump(mode="json") for a in self.actions],
        }


def refresh_records(
    records: Mapping[str, StateRecord],
    providers: Mapping[str, Any],
) -> Tuple[Dict[str, StateRecord], List[str]]:
    """Read every recorded object from its provider.

    Returns:
        (refreshed records, addresses whose remote object no longer exists).
        Vanished records are left out of the refreshed mapping so the plan
        creates them again.

    Raises:
        ProviderError: If a read fails for any reason other than not-found
    """
    refreshed: Dict[str, StateRecord] = {}
    vanished: List[str] = []
    for address in sorted(records):
        record = records[address]
        provider = providers.get(record.provider)
        if provider is None or record.tainted:
            refreshed[address] = record
            continue
        try:
            remote = provider.read(record.type, record.identifiers)
        except ResourceNotFoundError:
            logger.info("%s no longer exists remotely", address)
            vanished.append(address)
            continue
        if not canonical_equal(remote, record.attributes):
            logger.info("%s has drifted from its recorded attributes", address)
        refreshed[address] = record.model_copy(update={"attributes": remote})
    return refreshed, vanished


class _Planner:
    def __init__(self, graph: ResourceGraph, records: Mapping[str, StateRecord]):
        self.graph = graph
        self.records = records
        self.decisions: Dict[str, Tuple[Operation, bool]] = {}  # address -> (operation, replace)
        self.desired: Dict[str, Dict[str, Any]] = {}  # address -> resolved desired attributes

    def lookup(self, reference: Reference) -> Any:
        operation, replace = self.decisions[reference.address]
        if operation == Operation.CREATE or replace:
            return UNKNOWN
        record = self.records[reference.address]
        if operation == Operation.UPDATE:
            values = dict(record.outputs)
            values.update(self.desired[reference.address])
            return lookup_path(values, reference)
        return lookup_path(record.values(), reference)

    def diff(self, node: ResourceNode, record: StateRecord, desired: Dict[str, Any]) -> List[AttributeChange]:
        ignored = set(node.lifecycle.ignore_changes)
        immutable = set(node.lifecycle.immutable)
        changes = []
        for name in sorted(set(desired) | set(record.attributes)):
            if name in ignored:
                continue
            before = record.attributes.get(name)
            after = desired.get(name)
            if not contains_unknown(after) and canonical_equal(before, after):
                continue
            changes.append(AttributeChange(
                name=name,
                before=before,
                after=to_display(after),
                requires_replace=name in immutable,
            ))
        return changes

    def decide(self, node: ResourceNode) -> Tuple[Operation, bool, str, List[AttributeChange]]:
        desired = resolve_value(node.attributes, self.lookup)
        self.desired[node.address] = desired
        record = self.records.get(node.address)

        if record is None:
            changes = [AttributeChange(name=k, after=to_display(v)) for k, v in sorted(desired.items())]
            return Operation.CREATE, False, "not in state", changes

        changes = self.diff(node, record, desired)
        if record.tainted:
            return Operation.CREATE, True, "tainted by a failed create", changes
        if node.force_replace:
            return Operation.CREATE, True, "replacement requested", changes
        # A live object still pointing at a replaced one is torn down with it
        upstream = sorted(
            d for d in record.dependencies
            if d in self.decisions and self.decisions[d][1]
        )
        if upstream:
            return Operation.CREATE, True, f"depends on replaced {', '.join(upstream)}", changes
        if any(c.requires_replace for c in changes):
            names = ", ".join(c.name for c in changes if c.requires_replace)
            return Operation.CREATE, True, f"immutable attributes changed: {names}", changes
        if changes:
            return Operation.UPDATE, False, "attributes changed", changes
        return Operation.NOOP, False, "", []


def build_plan(
    graph: ResourceGraph,
    records: Mapping[str, StateRecord],
    destroy: bool = False,
) -> Plan:
    """Compute the plan that converges recorded state to the declared graph.

    Args:
        graph: The declared resource graph
        records: Recorded state by address (possibly refreshed)
        destroy: Plan deletion of every recorded resource instead

    Raises:
        PlanError: If a resource with prevent_destroy would be deleted or replaced
        UnresolvedAttributeError: If a reference names a missing attribute
        CycleError: If recorded dependencies form a cycle
    """
    planner = _Planner(graph, records)
    pending: Dict[str, dict] = {}  # key -> Action kwargs, in insertion order
    state_deps: Dict[str, List[str]] = {a: list(r.dependencies) for a, r in records.items()}

    if destroy:
        doomed = list(records)
    else:
        doomed = [a for a in records if a not in graph]
    doomed_set = set(doomed)

    replaced: List[str] = []
    if not destroy:
        for address in graph.order:
            node = graph.nodes[address]
            operation, replace, reason, changes = planner.decide(node)
            planner.decisions[address] = (operation, replace)
            if replace:
                replaced.append(address)
            record = records.get(address)
            after = to_display(planner.desired[address])
            before = dict(record.attributes) if record else None
            if replace:
                pending[action_key(Operation.DELETE, address)] = dict(
                    address=address, resource_type=node.type, operation=Operation.DELETE,
                    replace=True, reason=reason, changes=tuple(changes), before=before,
                )
            pending[action_key(operation, address)] = dict(
                address=address, resource_type=node.type, operation=operation,
                replace=replace, reason=reason, changes=tuple(changes), before=before, after=after,
            )

    for address in set(replaced) | (doomed_set & set(graph.nodes)):
        node = graph.nodes[address]
        if node.lifecycle.prevent_destroy:
            raise PlanError(f"{address} has lifecycle.prevent_destroy set and would be destroyed")

    # Deletes of undeclared resources go first in insertion order, dependents before dependencies
    delete_order = reverse_topological_order(sorted(doomed), state_deps)
    delete_entries = {}
    for address in delete_order:
        record = records[address]
        delete_entries[action_key(Operation.DELETE, address)] = dict(
            address=address, resource_type=record.type, operation=Operation.DELETE,
            reason="destroy requested" if destroy else "no longer declared",
            before=dict(record.attributes),
        )
    pending = {**delete_entries, **pending}

    deps = _action_dependencies(graph, records, planner.decisions, doomed_set, set(replaced), state_deps)
    ordered = topological_order(list(pending), deps)

    actions = []
    for key in ordered:
        kwargs = pending[key]
        actions.append(Action(key=key, depends_on=tuple(sorted(deps.get(key, ()))), **kwargs))

    plan = Plan(actions=actions, destroy=destroy)
    logger.info("Planned %s", plan.summary())
    return plan


def _action_dependencies(
    graph: ResourceGraph,
    records: Mapping[str, StateRecord],
    decisions: Mapping[str, Tuple[Operation, bool]],
    doomed: set,
    replaced: set,
    state_deps: Mapping[str, Iterable[str]],
) -> Dict[str, set]:
    """Derive which actions must finish before each action starts."""
    deps: Dict[str, set] = {}
    deleted = doomed | replaced

    def final_key(address: str) -> str:
        return action_key(decisions[address][0], address)

    # Recorded dependents of each address
    state_dependents: Dict[str, set] = {}
    for address, targets in state_deps.items():
        for target in targets:
            state_dependents.setdefault(target, set()).add(address)

    for address in deleted:
        key = action_key(Operation.DELETE, address)
        deps[key] = {
            action_key(Operation.DELETE, d)
            for d in state_dependents.get(address, ())
            if d in deleted and d != address
        }
        # Declared resources that used this one and survive must move off it first
        deps[key] |= {
            final_key(d)
            for d in state_dependents.get(address, ())
            if d in decisions and d not in deleted
        }

    for address, (operation, replace) in decisions.items():
        key = action_key(operation, address)
        deps[key] = {final_key(d) for d in graph.get_dependencies(address)}
        if replace:
            deps[key].add(action_key(Operation.DELETE, address))

    return deps
