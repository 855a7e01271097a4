"""CLI handlers for stack and state verb commands.

Usage:
    converger stack plan -f <stack.yaml> [--json-output] [--out plan.json]
    converger stack apply -f <stack.yaml> [--yes] [--json-output] [--report]
    converger stack destroy [-f <stack.yaml>] [--yes] [--json-output]
    converger stack validate -f <stack.yaml>
    converger stack refresh [--json-output]
    converger stack outputs -f <stack.yaml> [--json-output]
    converger state show [--json-output]
    converger state force-unlock <lock-id>
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from config import ConfigError, EngineSettings, load_settings
from converger.errors import ConvergerError, LockContentionError
from converger.planner import Action, Plan, display_value
from converger.runner import Converger
from declarations import load_stack
from reporting.report import RunReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCKED = 2

_SYMBOLS = {
    Action.CREATE: '+',
    Action.UPDATE: '~',
    Action.DELETE: '-',
    Action.NOOP: ' ',
}


def _base_parser(noun: str, verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every verb."""
    parser = argparse.ArgumentParser(
        prog=f'converger {noun} {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        help='Settings file (default: $CONVERGER_CONFIG or converger.yaml)',
    )
    parser.add_argument(
        '--workspace', '-w',
        help='State workspace (overrides settings)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _stack_parser(verb: str, description: str, required: bool = True) -> argparse.ArgumentParser:
    parser = _base_parser('stack', verb, description)
    parser.add_argument(
        '--file', '-f',
        help='Stack file (YAML or JSON)' + ('' if required else ' (optional)'),
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_settings(args) -> EngineSettings:
    return load_settings(path=args.config, workspace=args.workspace)


def _load_stack(args, required: bool = True):
    """Load the stack named by -f or --stack-json.

    Returns:
        StackDefinition, or None when not required and not given

    Raises:
        ConfigError: If required and missing, or invalid
    """
    if not args.file and not args.stack_json:
        if not required:
            return None
        raise ConfigError("specify a stack with -f/--file or --stack-json")
    return load_stack(file_path=args.file, json_str=args.stack_json)


def _emit_json(data: dict) -> None:
    """Emit structured JSON output."""
    print(json.dumps(data, indent=2, default=str))


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


@contextmanager
def _run_guard():
    """Map engine exceptions at the verb boundary to messages and exit codes.

    Yields a one-element list the caller may overwrite with its own exit code.
    """
    rc = [EXIT_OK]
    try:
        yield rc
    except LockContentionError as e:
        _error(f"{e}. Retry later, or run 'converger state force-unlock {e.lock_id}' "
               f"if that run is gone.")
        rc[0] = EXIT_LOCKED
    except (ConvergerError, ConfigError) as e:
        _error(str(e))
        rc[0] = EXIT_FAILED


@contextmanager
def _cancel_on_sigint(event: threading.Event):
    """First SIGINT requests cancellation; a second one interrupts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received: finishing in-flight operations "
                       "(press Ctrl-C again to abort)")
        event.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _preview(plan: Plan, title: str, workspace: str, out=None) -> None:
    """Print a human-readable plan."""
    out = out or sys.stdout
    summary = plan.summary()

    def emit(line: str = '') -> None:
        print(line, file=out)

    emit("")
    emit("=" * 65)
    emit(f"  {title}: {plan.desired.name or '(no stack)'}")
    emit(f"  Workspace: {workspace}")
    emit("=" * 65)
    emit("")
    if plan.is_empty:
        emit("  No changes. Observed state matches the declarations.")
        emit("")
        return
    for op in plan.changes:
        if op.replacing and op.action == Action.DELETE:
            continue
        symbol = '-/+' if op.replacing else _SYMBOLS[op.action]
        reason = f" ({op.reason})" if op.reason else ''
        emit(f"  {symbol:>3} {op.address}{reason}")
        if op.action == Action.DELETE:
            continue
        shown = op.changed if op.action == Action.UPDATE else list(op.after)
        for attr in shown:
            value = display_value(op.after.get(attr)) if attr in op.after else '(removed)'
            emit(f"        {attr} = {json.dumps(value) if not isinstance(value, str) else value}")
    emit("")
    emit(f"  Plan: {summary['create']} to create, {summary['update']} to update, "
         f"{summary['replace']} to replace, {summary['delete']} to delete.")
    emit("")


def _print_report(report) -> None:
    for address, status in report.instances.items():
        print(f"  {address}: {status}")
    failed = report.by_status('failed')
    if failed:
        print("")
        print("Failures:")
        for outcome in failed:
            print(f"  ✗ {outcome.key}: {outcome.error}")
    if report.outputs:
        print("")
        print("Outputs:")
        for name, value in report.outputs.items():
            print(f"  {name} = {json.dumps(value, default=str)}")


def _confirm(title: str, workspace: str):
    def confirm(plan: Plan) -> bool:
        _preview(plan, title, workspace)
        response = input("Apply these changes? [y/N] ").strip().lower()
        return response == 'y'
    return confirm


def _finish_apply(verb: str, args, settings: EngineSettings, plan: Plan,
                  report, duration: float) -> int:
    if report is None:
        print("Aborted.")
        return EXIT_FAILED

    if getattr(args, 'report', False):
        paths = RunReport.from_apply(report, plan, settings.workspace, settings.report_dir,
                                     verb=verb).write()
        logger.info(f"Reports written: {', '.join(str(p) for p in paths)}")

    if args.json_output:
        _emit_json({
            'verb': verb,
            'success': report.success,
            'duration_seconds': round(duration, 2),
            **report.to_dict(),
        })
    else:
        _print_report(report)
        print("")
        status = 'complete' if report.success else ('cancelled' if report.cancelled else 'failed')
        print(f"{verb.capitalize()} {status}: {report.counts()}")

    return EXIT_OK if report.success else EXIT_FAILED


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _stack_parser('plan', 'Preview changes without applying them')
    parser.add_argument(
        '--out', '-o',
        help='Write the plan as JSON to this path',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        stack = _load_stack(args)
        plan = Converger(settings).plan(stack)
        if args.out:
            plan.save(args.out)
        if args.json_output:
            _emit_json(plan.to_dict())
        else:
            _preview(plan, 'DRY-RUN PLAN', settings.workspace)
    return rc[0]


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _stack_parser('apply', 'Converge live state to the stack')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report',
        action='store_true',
        help='Write JSON and Markdown reports to report_dir',
    )
    parser.add_argument(
        '--save-plan',
        action='store_true',
        help='Persist the executed plan beside the state record',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if args.json_output and not args.yes:
        _error("--json-output requires --yes")
        return EXIT_FAILED

    with _run_guard() as rc:
        settings = _load_settings(args)
        stack = _load_stack(args)
        converger = Converger(settings)
        confirm = None if args.yes else _confirm('APPLY', settings.workspace)

        logger.info(f"Applying stack '{stack.name}' to workspace '{settings.workspace}'")
        start = time.time()
        with _cancel_on_sigint(converger.cancel_event):
            plan, report = converger.apply(stack, plan_path=_plan_path(args, settings),
                                           confirm=confirm)
        rc[0] = _finish_apply('apply', args, settings, plan, report, time.time() - start)
    return rc[0]


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _stack_parser('destroy', 'Delete every instance recorded in state', required=False)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report',
        action='store_true',
        help='Write JSON and Markdown reports to report_dir',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if args.json_output and not args.yes:
        _error("--json-output requires --yes")
        return EXIT_FAILED

    with _run_guard() as rc:
        settings = _load_settings(args)
        stack = _load_stack(args, required=False)
        converger = Converger(settings)

        confirm = None
        if not args.yes:
            def confirm(plan: Plan) -> bool:
                _preview(plan, 'DESTROY', settings.workspace)
                print(f"WARNING: This will delete {len(plan.changes)} instance(s) "
                      f"in workspace '{settings.workspace}'.")
                print("This action cannot be undone.")
                return input("Continue? [y/N] ").strip().lower() == 'y'

        logger.info(f"Destroying workspace '{settings.workspace}'")
        start = time.time()
        with _cancel_on_sigint(converger.cancel_event):
            plan, report = converger.destroy(name=stack.name if stack else '', confirm=confirm)
        rc[0] = _finish_apply('destroy', args, settings, plan, report, time.time() - start)
    return rc[0]


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Checks structure, references, types and cycles without touching state.
    """
    parser = _stack_parser('validate', 'Validate stack declarations')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        stack = _load_stack(args)
        desired, graph = Converger(settings).validate(stack)
        count = len(desired)
        if args.json_output:
            _emit_json({'stack': desired.name, 'valid': True, 'instances': count,
                        'order': graph.order()})
        else:
            print(f"Stack '{desired.name}' is valid "
                  f"({count} instance{'s' if count != 1 else ''}, {len(graph.edges)} references)")
            for address in graph.order():
                producers = graph.producers(address)
                suffix = f" <- {', '.join(producers)}" if producers else ''
                logger.debug(f"  {address}{suffix}")
    return rc[0]


def refresh_main(argv: list) -> int:
    """Handle 'stack refresh' verb."""
    parser = _stack_parser('refresh', 'Re-read observed instances from the provider',
                           required=False)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        result = Converger(settings).refresh()
        if args.json_output:
            _emit_json(result.to_dict())
        else:
            print(f"Refreshed: {len(result.unchanged)} unchanged, "
                  f"{len(result.drifted)} drifted, {len(result.missing)} missing")
            for address, attrs in result.drifted.items():
                print(f"  ~ {address}: {', '.join(attrs)}")
            for address in result.missing:
                print(f"  - {address}: no longer exists")
    return rc[0]


def outputs_main(argv: list) -> int:
    """Handle 'stack outputs' verb."""
    parser = _stack_parser('outputs', 'Show declared outputs from observed state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        stack = _load_stack(args)
        outputs = Converger(settings).outputs(stack)
        if args.json_output:
            _emit_json(outputs)
        else:
            for name, value in outputs.items():
                print(f"{name} = {json.dumps(value, default=str)}")
    return rc[0]


def state_show_main(argv: list) -> int:
    """Handle 'state show' verb."""
    parser = _base_parser('state', 'show', 'Print the persisted state record')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        record = Converger(settings).show_state()
        if args.json_output:
            _emit_json(record.to_dict())
            return rc[0]
        print(f"State: {settings.state_path}")
        print(f"Version: {record.version}")
        if record.lock:
            acquired = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(record.lock.acquired_at))
            print(f"Lock: {record.lock.lock_id} held by {record.lock.holder} since {acquired}")
        else:
            print("Lock: none")
        print(f"Resources: {len(record.observed)}")
        for address in record.observed:
            rs = record.observed.get(address)
            print(f"  {address}: {rs.resource_id}")
    return rc[0]


def force_unlock_main(argv: list) -> int:
    """Handle 'state force-unlock' verb."""
    parser = _base_parser('state', 'force-unlock', 'Remove a lock left by a crashed run')
    parser.add_argument('lock_id', help='Id of the lock to remove (see: converger state show)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    with _run_guard() as rc:
        settings = _load_settings(args)
        removed = Converger(settings).force_unlock(args.lock_id)
        if args.json_output:
            _emit_json({'unlocked': removed.to_dict()})
        else:
            print(f"Removed lock {removed.lock_id} held by {removed.holder}")
    return rc[0]


def _plan_path(args, settings: EngineSettings) -> Optional[Path]:
    if not getattr(args, 'save_plan', False):
        return None
    timestamp = time.strftime('%Y%m%d-%H%M%S')
    return settings.state_path.parent / 'plans' / f'{timestamp}.json'
