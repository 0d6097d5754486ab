"""converge: dependency resolution, planning and idempotent apply for declared resources."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("converge")
except PackageNotFoundError:
    __version__ = "dev"

# Public API exports
from converge.api import apply, destroy, plan, validate, PlanResult, ValidationResult
from converge.codes import ActionStatus, Operation, ValidationCode
from converge.config import EngineSettings
from converge.kernel.apply import ApplyExecutor, ApplyReport
from converge.kernel.errors import (
    ApplyError,
    ConvergeError,
    CycleError,
    DependencyFailedError,
    MissingVariableError,
    ProviderError,
    UnknownReferenceError,
)
from converge.kernel.provider import CreateResult, Provider
from converge.kernel.state import FileStateStore, MemoryStateStore, StateRecord

__all__ = [
    "__version__",
    "apply",
    "destroy",
    "plan",
    "validate",
    "PlanResult",
    "ValidationResult",
    "ActionStatus",
    "Operation",
    "ValidationCode",
    "EngineSettings",
    "ApplyExecutor",
    "ApplyReport",
    "ApplyError",
    "ConvergeError",
    "CycleError",
    "DependencyFailedError",
    "MissingVariableError",
    "ProviderError",
    "UnknownReferenceError",
    "CreateResult",
    "Provider",
    "FileStateStore",
    "MemoryStateStore",
    "StateRecord",
]
