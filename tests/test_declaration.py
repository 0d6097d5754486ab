"""Tests for declaration models."""

import pytest
from pydantic import ValidationError

from converge.kernel.declaration import (
    Declarations,
    Lifecycle,
    ResourceDeclaration,
    VariableDeclaration,
    split_address,
)


def test_resource_address_and_default_provider():
    """Address is TYPE.NAME and the provider defaults to the type prefix."""
    r = ResourceDeclaration(type="aws_s3_bucket", name="redirect")
    assert r.address == "aws_s3_bucket.redirect"
    assert r.provider_name == "aws"


def test_explicit_provider_wins():
    r = ResourceDeclaration(type="aws_s3_bucket", name="redirect", provider="aws-east")
    assert r.provider_name == "aws-east"


def test_invalid_identifier_rejected():
    """Names with dots or leading digits are not valid identifiers."""
    with pytest.raises(ValidationError):
        ResourceDeclaration(type="aws_s3_bucket", name="a.b")
    with pytest.raises(ValidationError):
        ResourceDeclaration(type="1bucket", name="a")


def test_unknown_fields_forbidden():
    with pytest.raises(ValidationError):
        ResourceDeclaration.model_validate({"type": "t_x", "name": "a", "attrs": {}})


def test_depends_on_deduplicated_in_order():
    r = ResourceDeclaration(type="t_x", name="a", depends_on=["t_y.b", "t_z.c", "t_y.b"])
    assert r.depends_on == ("t_y.b", "t_z.c")


def test_depends_on_must_be_addresses():
    with pytest.raises(ValidationError):
        ResourceDeclaration(type="t_x", name="a", depends_on=["not-an-address"])


def test_lifecycle_lists_canonicalized():
    lc = Lifecycle(immutable=["zone", "name", "zone"], ignore_changes=["tags"])
    assert lc.immutable == ("name", "zone")
    assert lc.ignore_changes == ("tags",)
    assert lc.prevent_destroy is False


def test_variable_without_default_is_required():
    """A missing default key makes a variable required; a null default does not."""
    assert VariableDeclaration.model_validate({}).required is True
    assert VariableDeclaration.model_validate({"default": None}).required is False
    assert VariableDeclaration.model_validate({"default": "x"}).default == "x"


def test_declarations_lookup():
    decls = Declarations.model_validate({
        "variables": {"region": {"default": "us-east-1"}},
        "resources": [
            {"type": "mem_bucket", "name": "a"},
            {"type": "mem_cert", "name": "b"},
        ],
    })
    assert decls.get_addresses() == ["mem_bucket.a", "mem_cert.b"]
    assert decls.get_resource("mem_cert.b").name == "b"
    assert decls.get_resource("mem_cert.zzz") is None


def test_split_address():
    assert split_address("aws_s3_bucket.site") == ("aws_s3_bucket", "site")
    with pytest.raises(ValueError):
        split_address("aws_s3_bucket.site.id")
