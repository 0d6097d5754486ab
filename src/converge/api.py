"""Public API for the converge package.

High-level functions that take declarations, a state store and providers
and return complete, structured results. The CLI is a thin layer over
these functions.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from converge.codes import ValidationCode
from converge.config import EngineSettings
from converge.kernel.apply import ApplyExecutor, ApplyReport
from converge.kernel.declaration import Declarations
from converge.kernel.errors import (
    CycleError,
    DuplicateAddressError,
    ExpressionError,
    MissingVariableError,
    PlanRejectedError,
    UnknownProviderError,
    UnknownReferenceError,
)
from converge.kernel.graph import ResourceGraph
from converge.kernel.plan import Plan, build_plan, refresh_records
from converge.kernel.state import StateStore

logger = logging.getLogger(__name__)

DeclarationsInput = Union[Declarations, Dict[str, Any], str, os.PathLike]

_VAR_RE = re.compile(r"(?<!\$)\$\{\s*var\.([A-Za-z0-9_-]+)\s*\}")


def _normalize_path(path: Union[str, os.PathLike, Path]) -> Path:
    """Normalize path input to Path object."""
    return Path(path) if not isinstance(path, Path) else path


def load_declarations(source: DeclarationsInput) -> Declarations:
    """Load declarations from a model, a dict or a JSON file path."""
    if isinstance(source, Declarations):
        return source
    if isinstance(source, dict):
        return Declarations.model_validate(source)
    with open(_normalize_path(source), "r", encoding="utf-8") as f:
        data = json.load(f)
    return Declarations.model_validate(data)


def load_variables(path: Union[str, os.PathLike]) -> Dict[str, Any]:
    """Load variable bindings from a JSON object file."""
    with open(_normalize_path(path), "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Variables file {path} must contain a JSON object")
    return data


@dataclass
class PlanResult:
    """A plan together with the graph it was computed from."""
    plan: Plan
    graph: ResourceGraph
    vanished: List[str] = field(default_factory=list)  # Recorded objects found missing on refresh


def plan(
    declarations: DeclarationsInput,
    store: StateStore,
    providers: Mapping[str, Any],
    variables: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
    destroy: bool = False,
    replace: Iterable[str] = (),
) -> PlanResult:
    """Build the graph and compute a plan without changing anything.

    Raises:
        GraphBuildError: If the declarations cannot form a valid graph
        PlanError: If the plan would destroy a protected resource
        StateLockError: If another run holds the state lock
    """
    settings = settings or EngineSettings()
    graph = ResourceGraph.build(load_declarations(declarations), variables, providers, replace)
    with store.lock():
        return _plan_locked(graph, store, providers, settings, destroy)


def _plan_locked(
    graph: ResourceGraph,
    store: StateStore,
    providers: Mapping[str, Any],
    settings: EngineSettings,
    destroy: bool,
) -> PlanResult:
    records = store.list()
    vanished: List[str] = []
    if settings.refresh:
        records, vanished = refresh_records(records, providers)
    return PlanResult(plan=build_plan(graph, records, destroy=destroy), graph=graph, vanished=vanished)


def apply(
    declarations: DeclarationsInput,
    store: StateStore,
    providers: Mapping[str, Any],
    variables: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
    approve: Optional[Callable[[Plan], bool]] = None,
    destroy: bool = False,
    replace: Iterable[str] = (),
    executor: Optional[ApplyExecutor] = None,
) -> ApplyReport:
    """Plan and apply under the whole-run state lock.

    The plan is passed to ``approve`` before any change is made, unless
    ``settings.auto_approve`` is set or the plan has no changes.

    Raises:
        GraphBuildError: Before any provider call, if the graph is invalid
        PlanRejectedError: If ``approve`` returned False
        StateLockError: If another run holds the state lock
    """
    settings = settings or EngineSettings()
    graph = ResourceGraph.build(load_declarations(declarations), variables, providers, replace)
    executor = executor or ApplyExecutor(store, providers, settings)

    with store.lock():
        result = _plan_locked(graph, store, providers, settings, destroy)
        if result.plan.has_changes and approve is not None and not settings.auto_approve:
            if not approve(result.plan):
                raise PlanRejectedError("Plan was not approved; nothing was changed")

        for address in result.vanished:
            # Gone remotely: forget it so the record/resource invariant holds
            store.delete(address)

        report = executor.execute(result.plan, graph)

    logger.info(
        "Apply finished: %d succeeded, %d failed, %d skipped",
        len(report.succeeded()), len(report.failed()), len(report.skipped()),
    )
    return report


def destroy(
    declarations: DeclarationsInput,
    store: StateStore,
    providers: Mapping[str, Any],
    variables: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
    approve: Optional[Callable[[Plan], bool]] = None,
    executor: Optional[ApplyExecutor] = None,
) -> ApplyReport:
    """Delete every recorded resource, dependents first."""
    return apply(
        declarations, store, providers,
        variables=variables, settings=settings, approve=approve,
        destroy=True, executor=executor,
    )


class ValidationIssue(BaseModel):
    """A single validation issue (error or warning)."""
    code: str
    message: str
    address: Optional[str] = None  # Resource with the issue
    reference: Optional[str] = None  # For UNKNOWN_REFERENCE / REDUNDANT_DEPENDS_ON
    cycle_path: Optional[List[str]] = None  # For CYCLE_DETECTED


class ValidationResult(BaseModel):
    """Result of validation/preflight check."""
    ok: bool  # True if no errors (warnings don't block)
    errors: List[ValidationIssue]
    warnings: List[ValidationIssue]


def validate(
    declarations: DeclarationsInput,
    variables: Optional[Mapping[str, Any]] = None,
    providers: Optional[Mapping[str, Any]] = None,
) -> ValidationResult:
    """Check that declarations build into a valid graph. Never raises for invalid input."""
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    try:
        decls = load_declarations(declarations)
    except (ValidationError, ValueError, OSError) as e:
        errors.append(ValidationIssue(code=ValidationCode.INVALID_STRUCTURE.value, message=str(e)))
        return ValidationResult(ok=False, errors=errors, warnings=warnings)

    try:
        graph = ResourceGraph.build(decls, variables, providers)
    except DuplicateAddressError as e:
        errors.append(ValidationIssue(code=ValidationCode.DUPLICATE_ADDRESS.value, message=str(e)))
        graph = None
    except MissingVariableError as e:
        errors.append(ValidationIssue(code=ValidationCode.MISSING_VARIABLE.value, message=str(e)))
        graph = None
    except UnknownReferenceError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.UNKNOWN_REFERENCE.value, message=str(e),
            address=e.address, reference=e.reference,
        ))
        graph = None
    except UnknownProviderError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.UNKNOWN_PROVIDER.value, message=str(e), address=e.address,
        ))
        graph = None
    except CycleError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.CYCLE_DETECTED.value, message=str(e), cycle_path=list(e.cycle),
        ))
        graph = None
    except ExpressionError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.INVALID_STRUCTURE.value, message=str(e), address=e.address,
        ))
        graph = None

    used = set()
    for resource in decls.resources:
        used.update(_VAR_RE.findall(json.dumps(resource.attributes)))
    for name in sorted(set(decls.variables) - used):
        warnings.append(ValidationIssue(
            code=ValidationCode.UNUSED_VARIABLE.value,
            message=f"Variable '{name}' is declared but never used",
        ))

    if graph is not None:
        for address in graph.addresses():
            node = graph.nodes[address]
            referenced = {r.address for r in node.references()}
            for explicit in node.depends_on:
                if explicit in referenced:
                    warnings.append(ValidationIssue(
                        code=ValidationCode.REDUNDANT_DEPENDS_ON.value,
                        message=f"{address}: depends_on '{explicit}' is already implied by a reference",
                        address=address,
                        reference=explicit,
                    ))

    return ValidationResult(ok=not errors, errors=errors, warnings=warnings)
