"""CLI tests for plan, apply, destroy, validate and state subcommands."""

import json
from pathlib import Path
import sys

import pytest

from converge import cli


def _run_cli(args, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["converge"] + args)
    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    return excinfo.value.code


def _write_json(path: Path, data: dict) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


@pytest.fixture
def workspace(tmp_path, make_chain):
    config = tmp_path / "converge.json"
    _write_json(config, make_chain())
    return {
        "config": config,
        "common": [
            "--config", str(config),
            "--state", str(tmp_path / "state.json"),
            "--memory-store", str(tmp_path / "objects.json"),
        ],
        "state": ["--state", str(tmp_path / "state.json")],
        "tmp": tmp_path,
    }


def test_plan_shows_creates(workspace, monkeypatch, capsys):
    code = _run_cli(["plan"] + workspace["common"], monkeypatch)
    assert code == 0
    out = capsys.readouterr().out
    assert "Plan: 3 to create, 0 to update, 0 to replace, 0 to delete." in out


def test_plan_detailed_exitcode(workspace, monkeypatch):
    assert _run_cli(["plan", "--detailed-exitcode"] + workspace["common"], monkeypatch) == 2


def test_plan_json(workspace, monkeypatch, capsys):
    _run_cli(["plan", "--json"] + workspace["common"], monkeypatch)
    data = json.loads(capsys.readouterr().out)
    assert [a["key"] for a in data["actions"]] == [
        "create:mem_bucket.a", "create:mem_cert.b", "create:mem_record.c"
    ]


def test_apply_then_plan_is_clean(workspace, monkeypatch, capsys):
    """Apply persists state and remote objects across invocations."""
    assert _run_cli(["apply", "--auto-approve"] + workspace["common"], monkeypatch) == 0
    out = capsys.readouterr().out
    assert "Apply complete: 3 succeeded, 0 failed, 0 skipped." in out
    assert (workspace["tmp"] / "state.json").exists()
    assert (workspace["tmp"] / "objects.json").exists()

    _run_cli(["plan"] + workspace["common"], monkeypatch)
    assert "No changes." in capsys.readouterr().out


def test_apply_declined(workspace, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "no")
    assert _run_cli(["apply"] + workspace["common"], monkeypatch) == 1
    assert "Apply cancelled" in capsys.readouterr().err
    assert not (workspace["tmp"] / "state.json").exists()


def test_apply_confirmed(workspace, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "yes")
    assert _run_cli(["apply"] + workspace["common"], monkeypatch) == 0


def test_destroy(workspace, monkeypatch, capsys):
    _run_cli(["apply", "--auto-approve"] + workspace["common"], monkeypatch)
    assert _run_cli(["destroy", "--auto-approve"] + workspace["common"], monkeypatch) == 0
    capsys.readouterr()

    _run_cli(["state", "list"] + workspace["state"], monkeypatch)
    assert capsys.readouterr().out == ""


def test_state_list_show_rm(workspace, monkeypatch, capsys):
    _run_cli(["apply", "--auto-approve", "--quiet"] + workspace["common"], monkeypatch)
    capsys.readouterr()

    _run_cli(["state", "list"] + workspace["state"], monkeypatch)
    assert capsys.readouterr().out.split() == ["mem_bucket.a", "mem_cert.b", "mem_record.c"]

    _run_cli(["state", "show", "mem_bucket.a"] + workspace["state"], monkeypatch)
    assert json.loads(capsys.readouterr().out)["identifiers"] == {"id": "mem_bucket-1"}

    assert _run_cli(["state", "rm", "mem_record.c"] + workspace["state"], monkeypatch) == 0
    capsys.readouterr()
    _run_cli(["state", "list", "--json"] + workspace["state"], monkeypatch)
    assert json.loads(capsys.readouterr().out) == ["mem_bucket.a", "mem_cert.b"]

    assert _run_cli(["state", "show", "mem_record.c"] + workspace["state"], monkeypatch) == 1


def test_state_unlock(workspace, monkeypatch, capsys):
    lock = workspace["tmp"] / "state.json.lock"
    lock.write_text("{}", encoding="utf-8")
    assert _run_cli(["plan"] + workspace["common"], monkeypatch) == 1
    assert "State is locked" in capsys.readouterr().err

    assert _run_cli(["state", "unlock"] + workspace["state"], monkeypatch) == 0
    assert not lock.exists()


def test_validate_ok(workspace, monkeypatch, capsys):
    assert _run_cli(["validate", "--config", str(workspace["config"])], monkeypatch) == 0
    assert "[OK] Validation complete" in capsys.readouterr().out


def test_validate_unknown_reference(tmp_path, monkeypatch, capsys):
    config = tmp_path / "bad.json"
    _write_json(config, {
        "resources": [{"type": "mem_cert", "name": "b", "attributes": {"x": "${mem_bucket.a.id}"}}]
    })
    assert _run_cli(["validate", "--config", str(config)], monkeypatch) == 1
    assert "UNKNOWN_REFERENCE" in capsys.readouterr().out


def test_plan_unknown_reference_exits_1(tmp_path, monkeypatch, capsys):
    config = tmp_path / "bad.json"
    _write_json(config, {
        "resources": [{"type": "mem_cert", "name": "b", "attributes": {"x": "${mem_bucket.a.id}"}}]
    })
    code = _run_cli(
        ["plan", "--config", str(config), "--state", ":memory:", "--memory-store", str(tmp_path / "o.json")],
        monkeypatch,
    )
    assert code == 1
    assert "undeclared resource 'mem_bucket.a'" in capsys.readouterr().err


def test_variables_from_flags(tmp_path, monkeypatch, capsys):
    config = tmp_path / "vars.json"
    _write_json(config, {
        "variables": {"env": {}, "size": {}},
        "resources": [{"type": "mem_bucket", "name": "a", "attributes": {"bucket": "${var.env}", "size": "${var.size}"}}],
    })
    var_file = tmp_path / "values.json"
    _write_json(var_file, {"env": "prod"})
    args = [
        "plan", "--json", "--config", str(config), "--state", ":memory:",
        "--memory-store", str(tmp_path / "o.json"), "--var-file", str(var_file), "--var", "size=3",
    ]
    assert _run_cli(args, monkeypatch) == 0
    action = json.loads(capsys.readouterr().out)["actions"][0]
    assert action["after"] == {"bucket": "prod", "size": 3}


def test_missing_variable_exits_1(tmp_path, monkeypatch, capsys):
    config = tmp_path / "vars.json"
    _write_json(config, {"variables": {"env": {}}, "resources": []})
    code = _run_cli(
        ["plan", "--config", str(config), "--state", ":memory:", "--memory-store", str(tmp_path / "o.json")],
        monkeypatch,
    )
    assert code == 1
    assert "env" in capsys.readouterr().err


def test_no_command_prints_help(monkeypatch):
    assert _run_cli([], monkeypatch) == 1
