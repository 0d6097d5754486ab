"""In-process provider.

Keeps objects in a dictionary, optionally mirrored to a JSON file so that
separate CLI invocations see the same "remote" objects. Used by the test
suite and for dry runs of declaration files.
"""

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import ProviderError, ResourceNotFoundError
from .provider import CreateResult, Provider
from .._internal.canonical_json import canonical_dumps


@dataclass
class _Failure:
    resource_type: str
    operation: str
    remaining: Optional[int]  # None means always
    retryable: bool
    partial: bool
    message: str
    when: Optional[Callable[[Dict[str, Any]], bool]] = None


class MemoryProvider(Provider):
    """Provider whose objects live in memory.

    Every object gets an ``id`` of the form ``{type}-{n}`` and an ``arn``
    output. Scripted failures can be injected with ``fail_on``.
    """

    name = "memory"

    def __init__(self, path: Union[str, Path, None] = None, latency: float = 0.0):
        self.path = Path(path) if path else None
        self.latency = latency
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.counter = 0
        self.calls: List[Tuple[str, str, Any]] = []  # (operation, resource_type, payload)
        self.max_in_flight = 0
        self._in_flight = 0
        self._failures: List[_Failure] = []
        self._mutex = threading.Lock()
        if self.path and self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.objects = data.get("objects", {})
            self.counter = data.get("counter", 0)

    def fail_on(
        self,
        resource_type: str,
        operation: str,
        times: Optional[int] = None,
        retryable: bool = False,
        partial: bool = False,
        message: str = "injected failure",
        when: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> None:
        """Make ``operation`` on ``resource_type`` fail.

        Args:
            times: Fail this many times, then succeed; None fails forever
            partial: For create, allocate the object before failing and
                report its identifiers on the error
            when: Only fail when this predicate accepts the attributes
                (the identifiers, for read and delete)
        """
        self._failures.append(_Failure(resource_type, operation, times, retryable, partial, message, when))

    def drift(self, object_id: str, **attributes: Any) -> None:
        """Change an object behind the engine's back."""
        with self._mutex:
            self.objects[object_id]["attributes"].update(attributes)
            self._save()

    def remove(self, object_id: str) -> None:
        """Delete an object behind the engine's back."""
        with self._mutex:
            self.objects.pop(object_id, None)
            self._save()

    def _check_failure(self, resource_type: str, operation: str, attributes: Dict[str, Any]) -> Optional[_Failure]:
        for failure in self._failures:
            if failure.resource_type != resource_type or failure.operation != operation:
                continue
            if failure.when is not None and not failure.when(attributes):
                continue
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    continue
                failure.remaining -= 1
            return failure
        return None

    def _enter(self, operation: str, resource_type: str, payload: Any) -> None:
        with self._mutex:
            self.calls.append((operation, resource_type, payload))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        if self.latency:
            time.sleep(self.latency)

    def _exit(self) -> None:
        with self._mutex:
            self._in_flight -= 1

    def _outputs(self, object_id: str, resource_type: str) -> Dict[str, Any]:
        return {"id": object_id, "arn": f"arn:memory:{resource_type}:{object_id}"}

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            canonical_dumps({"objects": self.objects, "counter": self.counter}, indent=2) + "\n",
            encoding="utf-8",
        )

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> CreateResult:
        self._enter("create", resource_type, attributes)
        try:
            with self._mutex:
                failure = self._check_failure(resource_type, "create", attributes)
                if failure is not None and not failure.partial:
                    raise ProviderError(f"create {resource_type}: {failure.message}", retryable=failure.retryable)
                self.counter += 1
                object_id = f"{resource_type}-{self.counter}"
                self.objects[object_id] = {"type": resource_type, "attributes": dict(attributes)}
                self._save()
                if failure is not None:
                    raise ProviderError(
                        f"create {resource_type}: {failure.message}",
                        retryable=failure.retryable,
                        partial_identifiers={"id": object_id},
                    )
                return CreateResult(identifiers={"id": object_id}, outputs=self._outputs(object_id, resource_type))
        finally:
            self._exit()

    def read(self, resource_type: str, identifiers: Dict[str, Any]) -> Dict[str, Any]:
        self._enter("read", resource_type, identifiers)
        try:
            with self._mutex:
                failure = self._check_failure(resource_type, "read", identifiers)
                if failure is not None:
                    raise ProviderError(f"read {resource_type}: {failure.message}", retryable=failure.retryable)
                obj = self.objects.get(identifiers.get("id"))
                if obj is None:
                    raise ResourceNotFoundError(f"{resource_type} {identifiers.get('id')} not found")
                return dict(obj["attributes"])
        finally:
            self._exit()

    def update(
        self,
        resource_type: str,
        identifiers: Dict[str, Any],
        attributes: Dict[str, Any],
    ) -> Dict[str, Any]:
        self._enter("update", resource_type, attributes)
        try:
            with self._mutex:
                failure = self._check_failure(resource_type, "update", attributes)
                if failure is not None:
                    raise ProviderError(f"update {resource_type}: {failure.message}", retryable=failure.retryable)
                object_id = identifiers.get("id")
                if object_id not in self.objects:
                    raise ResourceNotFoundError(f"{resource_type} {object_id} not found")
                self.objects[object_id]["attributes"] = dict(attributes)
                self._save()
                return self._outputs(object_id, resource_type)
        finally:
            self._exit()

    def delete(self, resource_type: str, identifiers: Dict[str, Any]) -> None:
        self._enter("delete", resource_type, identifiers)
        try:
            with self._mutex:
                failure = self._check_failure(resource_type, "delete", identifiers)
                if failure is not None:
                    raise ProviderError(f"delete {resource_type}: {failure.message}", retryable=failure.retryable)
                self.objects.pop(identifiers.get("id"), None)
                self._save()
        finally:
            self._exit()
