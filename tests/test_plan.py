"""Tests for the plan engine."""

import pytest

from converge.api import apply
from converge.codes import Operation
from converge.kernel.declaration import Declarations
from converge.kernel.errors import PlanError
from converge.kernel.graph import ResourceGraph
from converge.kernel.plan import build_plan


def plan_for(data, store, **kwargs):
    graph = ResourceGraph.build(Declarations.model_validate(data), force_replace=kwargs.pop("replace", ()))
    return build_plan(graph, store.list(), **kwargs)


def keys(actions):
    return [a.key for a in actions]


def test_fresh_chain_creates_in_dependency_order(make_chain, store):
    """A -> B -> C with empty state plans three creates, dependencies first."""
    plan = plan_for(make_chain(), store)

    assert keys(plan.actions) == ["create:mem_bucket.a", "create:mem_cert.b", "create:mem_record.c"]
    assert plan.get("create:mem_cert.b").depends_on == ("create:mem_bucket.a",)
    assert plan.get("create:mem_cert.b").after == {"bucket_id": "(known after apply)"}
    assert plan.get("create:mem_bucket.a").reason == "not in state"
    assert plan.summary() == {"create": 3, "update": 0, "delete": 0, "replace": 0, "noop": 0}


def test_second_plan_is_all_noop(make_chain, store, providers, settings):
    """Applying the plan and planning again yields no changes."""
    apply(make_chain(), store, providers, settings=settings)
    plan = plan_for(make_chain(), store)

    assert [a.operation for a in plan.actions] == [Operation.NOOP] * 3
    assert not plan.has_changes


def test_removed_resource_is_deleted(make_chain, store, providers, settings):
    apply(make_chain(), store, providers, settings=settings)
    plan = plan_for(make_chain(include_c=False), store)

    assert keys(plan.changes()) == ["delete:mem_record.c"]
    assert plan.get("delete:mem_record.c").reason == "no longer declared"
    assert plan.get("delete:mem_record.c").before == {"target": "arn:memory:mem_cert:mem_cert-2"}


def test_changed_attribute_updates_in_place(make_chain, store, providers, settings):
    """An update keeps the object's id, so dependents referencing it are unchanged."""
    apply(make_chain(), store, providers, settings=settings)
    data = make_chain()
    data["resources"][0]["attributes"]["bucket"] = "site-v2"
    plan = plan_for(data, store)

    assert keys(plan.changes()) == ["update:mem_bucket.a"]
    change = plan.get("update:mem_bucket.a").changes[0]
    assert (change.name, change.before, change.after) == ("bucket", "site", "site-v2")


def test_immutable_change_replaces(make_chain, store, providers, settings):
    """Changing an immutable attribute replaces the object and every live dependent of it."""
    data = make_chain()
    data["resources"][0]["lifecycle"] = {"immutable": ["bucket"]}
    apply(data, store, providers, settings=settings)

    data["resources"][0]["attributes"]["bucket"] = "site-v2"
    plan = plan_for(data, store)

    assert keys(plan.actions) == [
        "delete:mem_record.c",
        "delete:mem_cert.b",
        "delete:mem_bucket.a",
        "create:mem_bucket.a",
        "create:mem_cert.b",
        "create:mem_record.c",
    ]
    create = plan.get("create:mem_bucket.a")
    assert create.replace
    assert create.changes[0].requires_replace
    assert "delete:mem_bucket.a" in create.depends_on
    assert plan.get("delete:mem_bucket.a").depends_on == ("delete:mem_cert.b",)
    assert plan.get("create:mem_cert.b").reason == "depends on replaced mem_bucket.a"
    assert plan.get("create:mem_cert.b").changes[0].after == "(known after apply)"
    assert plan.summary()["replace"] == 3


def test_ignore_changes(make_chain, store, providers, settings):
    data = make_chain()
    data["resources"][0]["lifecycle"] = {"ignore_changes": ["bucket"]}
    apply(data, store, providers, settings=settings)

    data["resources"][0]["attributes"]["bucket"] = "something-else"
    assert not plan_for(data, store).has_changes


def test_prevent_destroy_blocks_replace(make_chain, store, providers, settings):
    data = make_chain()
    data["resources"][0]["lifecycle"] = {"immutable": ["bucket"], "prevent_destroy": True}
    apply(data, store, providers, settings=settings)

    data["resources"][0]["attributes"]["bucket"] = "site-v2"
    with pytest.raises(PlanError):
        plan_for(data, store)
    with pytest.raises(PlanError):
        plan_for(data, store, destroy=True)


def test_destroy_deletes_dependents_first(make_chain, store, providers, settings):
    apply(make_chain(), store, providers, settings=settings)
    plan = plan_for(make_chain(), store, destroy=True)

    assert keys(plan.actions) == ["delete:mem_record.c", "delete:mem_cert.b", "delete:mem_bucket.a"]
    assert plan.get("delete:mem_bucket.a").depends_on == ("delete:mem_cert.b",)
    assert plan.get("delete:mem_bucket.a").reason == "destroy requested"


def test_tainted_record_is_replaced(make_chain, store, providers, settings):
    apply(make_chain(), store, providers, settings=settings)
    record = store.get("mem_bucket.a")
    store.put("mem_bucket.a", record.model_copy(update={"tainted": True}))

    plan = plan_for(make_chain(), store)
    assert keys(plan.changes())[:4] == [
        "delete:mem_record.c", "delete:mem_cert.b", "delete:mem_bucket.a", "create:mem_bucket.a"
    ]
    assert plan.get("create:mem_bucket.a").reason == "tainted by a failed create"


def test_forced_replacement(make_chain, store, providers, settings):
    apply(make_chain(), store, providers, settings=settings)
    plan = plan_for(make_chain(), store, replace=["mem_record.c"])

    assert keys(plan.changes()) == ["delete:mem_record.c", "create:mem_record.c"]
    assert plan.get("create:mem_record.c").reason == "replacement requested"


def test_prevent_destroy_on_dependent_blocks_replace(make_chain, store, providers, settings):
    """Replacing an object replaces its live dependents, so their prevent_destroy applies."""
    data = make_chain()
    data["resources"][1]["lifecycle"] = {"prevent_destroy": True}
    apply(data, store, providers, settings=settings)

    with pytest.raises(PlanError) as exc_info:
        plan_for(data, store, replace=["mem_bucket.a"])
    assert "mem_cert.b" in str(exc_info.value)


def test_replaced_object_deleted_after_dependent_moves_off(store, providers, settings):
    """A dependent that no longer references a replaced object is updated before the delete."""
    before = {
        "resources": [
            {"type": "mem_cert", "name": "b", "attributes": {"bucket_id": "${mem_bucket.a.id}"}},
            {"type": "mem_bucket", "name": "a", "attributes": {"bucket": "site"}},
        ]
    }
    apply(before, store, providers, settings=settings)

    after = {
        "resources": [
            {"type": "mem_cert", "name": "b", "attributes": {"bucket_id": "static"}},
            {"type": "mem_bucket", "name": "a", "attributes": {"bucket": "site"}},
        ]
    }
    plan = plan_for(after, store, replace=["mem_bucket.a"])

    assert keys(plan.actions) == ["update:mem_cert.b", "delete:mem_bucket.a", "create:mem_bucket.a"]
    assert plan.get("delete:mem_bucket.a").depends_on == ("update:mem_cert.b",)


def test_removed_dependency_deleted_after_dependent_moves_off(store, providers, settings):
    """A dependency that is no longer declared is deleted only after its former dependent is updated."""
    before = {
        "resources": [
            {"type": "mem_bucket", "name": "a", "attributes": {"bucket": "site"}},
            {"type": "mem_cert", "name": "b", "attributes": {"bucket_id": "${mem_bucket.a.id}"}},
        ]
    }
    apply(before, store, providers, settings=settings)

    after = {"resources": [{"type": "mem_cert", "name": "b", "attributes": {"bucket_id": "static"}}]}
    plan = plan_for(after, store)

    assert keys(plan.actions) == ["update:mem_cert.b", "delete:mem_bucket.a"]
    assert plan.get("delete:mem_bucket.a").depends_on == ("update:mem_cert.b",)


def test_plan_to_dict(make_chain, store):
    data = plan_for(make_chain(), store).to_dict()
    assert data["destroy"] is False
    assert data["summary"]["create"] == 3
    assert data["actions"][0]["operation"] == "create"
