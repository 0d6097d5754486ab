"""Tests for the in-memory provider."""

import pytest

from converge.kernel.errors import ProviderError, ResourceNotFoundError
from converge.kernel.memory_provider import MemoryProvider


def test_create_read_update_delete():
    provider = MemoryProvider()
    created = provider.create("mem_bucket", {"bucket": "site"})

    assert created.identifiers == {"id": "mem_bucket-1"}
    assert created.outputs == {"id": "mem_bucket-1", "arn": "arn:memory:mem_bucket:mem_bucket-1"}
    assert provider.read("mem_bucket", created.identifiers) == {"bucket": "site"}

    outputs = provider.update("mem_bucket", created.identifiers, {"bucket": "site-v2"})
    assert outputs["id"] == "mem_bucket-1"
    assert provider.read("mem_bucket", created.identifiers) == {"bucket": "site-v2"}

    provider.delete("mem_bucket", created.identifiers)
    with pytest.raises(ResourceNotFoundError):
        provider.read("mem_bucket", created.identifiers)
    # Deleting twice is fine
    provider.delete("mem_bucket", created.identifiers)


def test_update_missing_object():
    with pytest.raises(ResourceNotFoundError):
        MemoryProvider().update("mem_bucket", {"id": "nope"}, {})


def test_scripted_failures():
    provider = MemoryProvider()
    provider.fail_on("mem_bucket", "create", times=1, retryable=True)

    with pytest.raises(ProviderError) as exc_info:
        provider.create("mem_bucket", {})
    assert exc_info.value.retryable
    assert provider.objects == {}
    # Second call succeeds
    provider.create("mem_bucket", {})


def test_failure_predicate():
    provider = MemoryProvider()
    provider.fail_on("mem_bucket", "create", when=lambda attrs: attrs.get("bucket") == "bad")

    provider.create("mem_bucket", {"bucket": "good"})
    with pytest.raises(ProviderError):
        provider.create("mem_bucket", {"bucket": "bad"})


def test_partial_create_reports_identifiers():
    provider = MemoryProvider()
    provider.fail_on("mem_bucket", "create", partial=True)

    with pytest.raises(ProviderError) as exc_info:
        provider.create("mem_bucket", {})
    assert exc_info.value.partial_identifiers == {"id": "mem_bucket-1"}
    assert "mem_bucket-1" in provider.objects


def test_objects_persist_to_file(tmp_path):
    path = tmp_path / "objects.json"
    first = MemoryProvider(path=path)
    first.create("mem_bucket", {"bucket": "site"})

    second = MemoryProvider(path=path)
    assert second.read("mem_bucket", {"id": "mem_bucket-1"}) == {"bucket": "site"}
    assert second.create("mem_bucket", {}).identifiers == {"id": "mem_bucket-2"}
