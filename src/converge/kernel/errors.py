"""Exception hierarchy for the convergence kernel.

Build errors abort a run before any provider call is made. Provider and
dependency errors are recorded per action during apply.
"""

from typing import Any, Iterable


class ConvergeError(Exception):
    """Base exception for all converge errors."""
    pass


class GraphBuildError(ConvergeError):
    """Base exception for errors raised while building the resource graph."""
    pass


class DuplicateAddressError(GraphBuildError):
    """Raised when two resources are declared with the same address."""
    def __init__(self, duplicates: Iterable[str]):
        self.duplicates = sorted(set(duplicates))
        super().__init__(f"Resources declared more than once: {', '.join(self.duplicates)}")


class UnknownReferenceError(GraphBuildError):
    """Raised when an expression or depends_on names an undeclared resource."""
    def __init__(self, address: str, reference: str):
        self.address = address
        self.reference = reference
        super().__init__(f"{address}: reference to undeclared resource '{reference}'")


class MissingVariableError(GraphBuildError):
    """Raised when a required variable has no binding."""
    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(set(missing))
        super().__init__(f"Required variables have no value: {', '.join(self.missing)}")


class UnknownProviderError(GraphBuildError):
    """Raised when a resource names a provider that was not configured."""
    def __init__(self, address: str, provider: str):
        self.address = address
        self.provider = provider
        super().__init__(f"{address}: provider '{provider}' is not configured")


class CycleError(GraphBuildError):
    """Raised when a cycle is detected in the dependency graph."""
    def __init__(self, cycle: list[str]):
        # Format cycle for message (remove duplicate final node)
        if len(cycle) > 1 and cycle[0] == cycle[-1]:
            cycle = cycle[:-1]
        self.cycle = cycle
        cycle_str = " -> ".join(cycle) + f" -> {cycle[0]}" if cycle else ""
        super().__init__(f"Cycle detected in dependency graph:\n  Cycle: {cycle_str}")


class ExpressionError(GraphBuildError):
    """Raised when an interpolation expression cannot be parsed."""
    def __init__(self, address: str, expression: str, reason: str):
        self.address = address
        self.expression = expression
        super().__init__(f"{address}: invalid expression '{expression}': {reason}")


class PlanError(ConvergeError):
    """Raised when a plan cannot be produced safely."""
    pass


class PlanRejectedError(ConvergeError):
    """Raised when the plan was presented for approval and rejected."""
    pass


class ProviderError(ConvergeError):
    """Raised by a provider when a remote operation fails.

    Args:
        message: Human-readable failure description
        retryable: Whether repeating the same call may succeed
        partial_identifiers: Identifiers of an object the provider created
            before failing, so the engine can record it as tainted
    """
    def __init__(
        self,
        message: str,
        retryable: bool = False,
        partial_identifiers: dict[str, Any] | None = None,
    ):
        self.retryable = retryable
        self.partial_identifiers = partial_identifiers
        super().__init__(message)


class ResourceNotFoundError(ProviderError):
    """Raised by Provider.read when the remote object no longer exists."""
    pass


class DependencyFailedError(ConvergeError):
    """Marks an action skipped because an upstream action did not succeed."""
    def __init__(self, address: str, upstream: str):
        self.address = address
        self.upstream = upstream
        super().__init__(f"{address}: skipped because '{upstream}' did not complete")


class ApplyError(ConvergeError):
    """Raised after an apply in which one or more actions did not succeed."""
    def __init__(self, report: Any):
        self.report = report
        failed = report.failed()
        skipped = report.skipped()
        super().__init__(
            f"Apply incomplete: {len(failed)} failed, {len(skipped)} skipped or cancelled"
        )


class StateError(ConvergeError):
    """Base exception for state store errors."""
    pass


class StateLockError(StateError):
    """Raised when the state lock is held by another run."""
    def __init__(self, path: str, holder: str | None = None):
        self.path = path
        self.holder = holder
        msg = f"State is locked: {path}"
        if holder:
            msg += f" (held by {holder})"
        super().__init__(msg)


class StateCorruptError(StateError):
    """Raised when a state file cannot be parsed."""
    pass


class UnresolvedAttributeError(ConvergeError):
    """Raised when a reference names an attribute its resource does not have."""
    def __init__(self, reference: str, available: Iterable[str]):
        self.reference = reference
        self.available = sorted(available)
        super().__init__(
            f"Reference '{reference}' does not match any attribute "
            f"(available: {', '.join(self.available) or 'none'})"
        )
