"""Pytest configuration and shared fixtures.

No sys.path hacks - tests import from the installed converge package.
"""

import pytest

from converge.config import EngineSettings
from converge.kernel.declaration import Declarations
from converge.kernel.memory_provider import MemoryProvider
from converge.kernel.state import MemoryStateStore


def chain_declarations(include_c: bool = True) -> dict:
    """Three resources A -> B -> C: C depends on B, B depends on A."""
    resources = [
        {"type": "mem_bucket", "name": "a", "attributes": {"bucket": "site"}},
        {"type": "mem_cert", "name": "b", "attributes": {"bucket_id": "${mem_bucket.a.id}"}},
    ]
    if include_c:
        resources.append(
            {"type": "mem_record", "name": "c", "attributes": {"target": "${mem_cert.b.arn}"}}
        )
    return {"resources": resources}


@pytest.fixture
def provider():
    return MemoryProvider()


@pytest.fixture
def providers(provider):
    return {"mem": provider}


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def settings():
    # No backoff sleeps, no refresh noise in call logs unless a test asks for it
    return EngineSettings(retry_backoff_seconds=0.0, refresh=False)


@pytest.fixture
def chain():
    return Declarations.model_validate(chain_declarations())


@pytest.fixture
def make_chain():
    """Factory for the A -> B -> C declarations dict, optionally without C."""
    return chain_declarations
