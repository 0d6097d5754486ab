"""converge CLI: plan, apply and destroy declared resources."""

import argparse
import importlib
import json
import logging
import signal
import sys
from importlib.metadata import version as get_version, PackageNotFoundError
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_STATE = "converge.state.json"
DEFAULT_MEMORY_STORE = ".converge/memory_provider.json"


def _parse_var(raw: str) -> tuple[str, Any]:
    """Parse --var NAME=VALUE; VALUE is JSON when it parses, else a plain string."""
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"--var expects NAME=VALUE, got '{raw}'")
    name, value = raw.split("=", 1)
    try:
        return name, json.loads(value)
    except json.JSONDecodeError:
        return name, value


def _parse_provider(raw: str) -> tuple[str, str]:
    """Parse --provider NAME=module:Class."""
    if "=" not in raw or ":" not in raw.split("=", 1)[1]:
        raise argparse.ArgumentTypeError(f"--provider expects NAME=module:Class, got '{raw}'")
    name, target = raw.split("=", 1)
    return name, target


def _load_provider(target: str) -> Any:
    module_name, class_name = target.split(":", 1)
    module = importlib.import_module(module_name)
    return getattr(module, class_name)()


def _build_providers(args, declarations, store=None) -> Dict[str, Any]:
    """Explicit --provider plugins; every other provider name is served in memory."""
    from .kernel.memory_provider import MemoryProvider

    providers: Dict[str, Any] = {}
    for name, target in args.provider or []:
        providers[name] = _load_provider(target)
    names = [r.provider_name for r in declarations.resources]
    if store is not None:
        # Resources no longer declared still need their provider to be deleted
        names += [r.provider for r in store.list().values()]
    memory = None
    for name in names:
        if name not in providers:
            if memory is None:
                memory = MemoryProvider(path=args.memory_store)
            providers[name] = memory
    return providers


def _variables(args) -> Dict[str, Any]:
    from .api import load_variables

    values: Dict[str, Any] = {}
    for path in args.var_file or []:
        values.update(load_variables(path))
    for name, value in args.var or []:
        values[name] = value
    return values


def _confirm(plan) -> bool:
    from .report import render_plan

    print(render_plan(plan))
    print("")
    try:
        answer = input("Do you want to perform these actions? Only 'yes' will be accepted: ")
    except EOFError:
        return False
    return answer.strip() == "yes"


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point for converge commands."""
    # Get version for --version argument (handle PackageNotFoundError)
    try:
        converge_version = get_version("converge")
    except PackageNotFoundError:
        converge_version = "dev"

    parser = argparse.ArgumentParser(
        prog="converge",
        description="converge: plan and apply declared resource graphs idempotently"
    )
    parser.add_argument("--version", action="version", version=f"converge {converge_version}")

    # Common arguments
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all non-error output."
    )
    parent_parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: CONVERGE_LOG_LEVEL or WARNING)"
    )
    parent_parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON instead of text"
    )

    # Arguments shared by commands that read declarations
    config_parser = argparse.ArgumentParser(add_help=False)
    config_parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to declarations JSON"
    )
    config_parser.add_argument(
        "--var",
        type=_parse_var,
        action="append",
        help="Variable binding NAME=VALUE (repeatable)"
    )
    config_parser.add_argument(
        "--var-file",
        type=Path,
        action="append",
        help="JSON file of variable bindings (repeatable)"
    )
    config_parser.add_argument(
        "--provider",
        type=_parse_provider,
        action="append",
        help="Provider plugin NAME=module:Class (repeatable); others run in memory"
    )
    config_parser.add_argument(
        "--memory-store",
        type=Path,
        default=Path(DEFAULT_MEMORY_STORE),
        help=f"File backing the in-memory provider (default: {DEFAULT_MEMORY_STORE})"
    )

    # Arguments shared by commands that touch state
    state_parser_common = argparse.ArgumentParser(add_help=False)
    state_parser_common.add_argument(
        "--state",
        default=DEFAULT_STATE,
        help=f"State file path, or :memory: (default: {DEFAULT_STATE})"
    )
    state_parser_common.add_argument(
        "--lock-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the state lock"
    )

    run_parser = argparse.ArgumentParser(add_help=False)
    run_parser.add_argument(
        "--no-refresh",
        dest="refresh",
        action="store_false",
        default=None,
        help="Do not read remote objects before planning"
    )
    run_parser.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Maximum concurrent provider calls"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    plan_parser = subparsers.add_parser(
        "plan",
        help="Show the actions an apply would take",
        parents=[parent_parser, config_parser, state_parser_common, run_parser]
    )
    plan_parser.add_argument("--destroy", action="store_true", help="Plan deletion of everything")
    plan_parser.add_argument("--replace", action="append", default=[], help="Force delete + create of ADDRESS")
    plan_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 2 when the plan has changes"
    )

    for name, help_text in (("apply", "Apply the plan"), ("destroy", "Delete every recorded resource")):
        sub = subparsers.add_parser(
            name,
            help=help_text,
            parents=[parent_parser, config_parser, state_parser_common, run_parser]
        )
        sub.add_argument(
            "--auto-approve",
            action="store_true",
            default=None,
            help="Skip interactive approval (automation mode)"
        )
        if name == "apply":
            sub.add_argument("--replace", action="append", default=[], help="Force delete + create of ADDRESS")

    subparsers.add_parser(
        "validate",
        help="Check declarations without touching state",
        parents=[parent_parser, config_parser]
    )

    state_parser = subparsers.add_parser(
        "state",
        help="Inspect or edit recorded state"
    )
    state_subparsers = state_parser.add_subparsers(dest="state_command", help="Available state commands")
    state_subparsers.add_parser("list", help="List recorded addresses", parents=[parent_parser, state_parser_common])
    show_parser = state_subparsers.add_parser("show", help="Show one record", parents=[parent_parser, state_parser_common])
    show_parser.add_argument("address")
    rm_parser = state_subparsers.add_parser(
        "rm",
        help="Forget a record without deleting the remote object",
        parents=[parent_parser, state_parser_common]
    )
    rm_parser.add_argument("address")
    state_subparsers.add_parser(
        "unlock",
        help="Remove a lock left by a crashed run",
        parents=[parent_parser, state_parser_common]
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)
    if args.command == "state" and not args.state_command:
        state_parser.print_help()
        sys.exit(1)

    # Lazy imports: only load the kernel once a command is known
    from pydantic import ValidationError
    from .config import EngineSettings
    from .kernel.errors import ConvergeError

    try:
        settings = EngineSettings.from_env(
            log_level=args.log_level,
            lock_timeout_seconds=getattr(args, "lock_timeout", None),
            refresh=getattr(args, "refresh", None),
            parallelism=getattr(args, "parallelism", None),
            auto_approve=getattr(args, "auto_approve", None),
        )
    except ValidationError as e:
        print(f"Error: invalid settings: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "validate":
            _cmd_validate(args)
        elif args.command == "state":
            _cmd_state(args, settings)
        elif args.command == "plan":
            _cmd_plan(args, settings)
        else:
            _cmd_apply(args, settings)
    except (ConvergeError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


def _cmd_validate(args) -> None:
    from .api import validate
    from ._internal.canonical_json import canonical_dumps

    result = validate(args.config, variables=_variables(args))
    if args.json:
        print(canonical_dumps(result.model_dump(), indent=2))
    elif not args.quiet:
        print(f"[{'OK' if result.ok else 'FAILED'}] Validation complete")
        for issue in result.errors:
            print(f"  error {issue.code}: {issue.message}")
        for issue in result.warnings:
            print(f"  warning {issue.code}: {issue.message}")
    if not result.ok:
        sys.exit(1)


def _cmd_state(args, settings) -> None:
    from .kernel.state import FileStateStore, open_state_store
    from ._internal.canonical_json import canonical_dumps

    store = open_state_store(args.state, lock_timeout=settings.lock_timeout_seconds)
    if args.state_command == "unlock":
        if not isinstance(store, FileStateStore):
            print("Error: only file state can be unlocked", file=sys.stderr)
            sys.exit(1)
        removed = store.force_unlock()
        if not args.quiet:
            print("State unlocked" if removed else "State was not locked")
        return

    if args.state_command == "list":
        records = store.list()
        if args.json:
            print(canonical_dumps(sorted(records), indent=2))
        elif not args.quiet:
            for address in sorted(records):
                suffix = " (tainted)" if records[address].tainted else ""
                print(f"{address}{suffix}")
        return

    if args.state_command == "show":
        record = store.get(args.address)
        if record is None:
            print(f"Error: no state record for {args.address}", file=sys.stderr)
            sys.exit(1)
        print(canonical_dumps(record.model_dump(mode="json"), indent=2))
        return

    # rm
    with store.lock():
        if store.get(args.address) is None:
            print(f"Error: no state record for {args.address}", file=sys.stderr)
            sys.exit(1)
        store.delete(args.address)
    if not args.quiet:
        print(f"Removed {args.address} from state")


def _cmd_plan(args, settings) -> None:
    from .api import load_declarations, plan
    from .kernel.state import open_state_store
    from .report import render_plan
    from ._internal.canonical_json import canonical_dumps

    declarations = load_declarations(args.config)
    store = open_state_store(args.state, lock_timeout=settings.lock_timeout_seconds)
    result = plan(
        declarations,
        store,
        _build_providers(args, declarations, store),
        variables=_variables(args),
        settings=settings,
        destroy=args.destroy,
        replace=args.replace,
    )
    if args.json:
        print(canonical_dumps(result.plan.to_dict(), indent=2))
    elif not args.quiet:
        print(render_plan(result.plan))
    if args.detailed_exitcode and result.plan.has_changes:
        sys.exit(2)


def _cmd_apply(args, settings) -> None:
    from .api import apply, load_declarations
    from .kernel.apply import ApplyExecutor
    from .kernel.errors import PlanRejectedError
    from .kernel.state import open_state_store
    from .report import apply_report_to_dict, render_apply_report
    from ._internal.canonical_json import canonical_dumps

    declarations = load_declarations(args.config)
    store = open_state_store(args.state, lock_timeout=settings.lock_timeout_seconds)
    providers = _build_providers(args, declarations, store)
    executor = ApplyExecutor(store, providers, settings)

    def _interrupt(signum, frame):
        # First interrupt cancels gracefully; a second one aborts
        signal.signal(signal.SIGINT, signal.default_int_handler)
        executor.cancel()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        report = apply(
            declarations,
            store,
            providers,
            variables=_variables(args),
            settings=settings,
            approve=_confirm,
            destroy=args.command == "destroy",
            replace=getattr(args, "replace", ()),
            executor=executor,
        )
    except PlanRejectedError as e:
        print(f"Apply cancelled: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json:
        print(canonical_dumps(apply_report_to_dict(report), indent=2))
    elif not args.quiet:
        print(render_apply_report(report))
    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
