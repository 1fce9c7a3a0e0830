"""CLI handlers for stack verb commands (plan, apply, destroy, validate).

Usage:
    iac-engine stack plan -M <stack> [--detailed-exitcode] [--json-output]
    iac-engine stack apply -M <stack> [--concurrency N] [--report-dir DIR]
    iac-engine stack destroy -M <stack> [--yes]
    iac-engine stack validate -M <stack> [--verbose]

Exit codes: 0 success, 1 failed/skipped/cancelled resources, 2 configuration
error (or pending changes with plan --detailed-exitcode), 3 state corruption.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from config import ON_ERROR_CHOICES, ConfigError, EngineConfig, list_stacks, load_engine_config
from engine.executor import ApplyResult, Executor
from engine.graph import ResourceGraph
from engine.plan import Plan, Planner
from engine.report import RunReport
from engine.state import StateCorruptionError, StateStore
from manifest import Manifest, load_manifest
from provider import get_provider
from schema import default_registry
from validation import format_preflight_errors, validate_readiness

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_STATE = 3


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iac-engine stack {verb}',
        description=f'{verb.capitalize()} resources from a stack document',
    )
    parser.add_argument(
        '--manifest', '-M',
        help='Stack name from stacks/',
    )
    parser.add_argument(
        '--manifest-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline stack JSON',
    )
    parser.add_argument(
        '--state',
        help='State file path (default: .states/<stack>/state.json)',
    )
    parser.add_argument(
        '--concurrency', '-j',
        type=int,
        help='Maximum concurrent provider actions',
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
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Write JSON and markdown run reports to this directory',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
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


def _load_stack(args) -> tuple[Manifest, EngineConfig]:
    """Load the stack document and engine config from parsed args.

    Raises:
        ConfigError: If no stack is given or anything is invalid
    """
    if not args.manifest and not args.manifest_file and not args.manifest_json:
        available = list_stacks()
        raise ConfigError(
            "specify a stack with -M, --manifest-file, or --manifest-json "
            f"(available: {', '.join(available) if available else 'none'})"
        )

    config = load_engine_config()
    manifest = load_manifest(
        name=args.manifest,
        file_path=args.manifest_file,
        json_str=args.manifest_json,
        workspace=config.workspace,
    )
    return manifest, config


def _settings(args, manifest: Manifest, config: EngineConfig) -> tuple[int, str]:
    """Effective (concurrency, on_error): CLI over stack settings over engine.yaml.

    Raises:
        ConfigError: If an override is invalid
    """
    concurrency = args.concurrency
    if concurrency is None:
        concurrency = manifest.settings.concurrency
    if concurrency is None:
        concurrency = config.concurrency
    if not isinstance(concurrency, int) or concurrency < 1:
        raise ConfigError(f"concurrency must be a positive integer, got {concurrency!r}")
    on_error = manifest.settings.on_error or config.on_error
    if on_error not in ON_ERROR_CHOICES:
        raise ConfigError(f"on_error must be one of {', '.join(ON_ERROR_CHOICES)}, got '{on_error}'")
    return concurrency, on_error


def _state_path(args, manifest: Manifest, config: EngineConfig) -> Path:
    return Path(args.state) if args.state else config.state_path_for(manifest.name)


def _build_graph(manifest: Manifest, config: EngineConfig) -> ResourceGraph:
    registry = default_registry(config.schemas_file)
    return ResourceGraph(manifest, registry)


def _run_preflight(args, config: EngineConfig, state_path: Path) -> Optional[int]:
    """Run preflight checks.

    Returns:
        None if checks pass, exit code if checks fail
    """
    if args.skip_preflight:
        return None

    errors = validate_readiness(config, state_path)
    if errors:
        print(format_preflight_errors(errors), file=sys.stderr)
        return EXIT_CONFIG
    logger.debug("Pre-flight validation passed")
    return None


def _emit_json(verb: str, plan: Plan, result: Optional[ApplyResult] = None) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'stack': plan.stack,
        'plan': plan.to_dict(),
    }
    if result is not None:
        output.update(result.run_state.to_dict())
        output['verb'] = verb
        output['order'] = result.order
        output['exit_code'] = result.exit_code
    print(json.dumps(output, indent=2))


def _print_summary(result: ApplyResult) -> None:
    rs = result.run_state
    counts = ', '.join(f"{n} {status}" for status, n in sorted(rs.summary().items()))
    print(f"\n{rs.verb.capitalize()} complete: {counts or 'nothing to do'} ({rs.duration:.1f}s)")
    for name, error in rs.failures.items():
        print(f"  ✗ {name}: {error}")
    for name in rs.with_status('skipped'):
        print(f"  - {name}: {rs.get_node(name).error}")
    if rs.fatal_error:
        print(f"\nState corruption: {rs.fatal_error}")
        print("Reconcile the state file manually before running again.")


def _execute(args, plan: Plan, planner: Planner, state: StateStore,
             manifest: Manifest, config: EngineConfig) -> ApplyResult:
    """Run a plan with SIGINT wired to cancellation."""
    concurrency, on_error = _settings(args, manifest, config)
    executor = Executor(
        plan=plan,
        state=state,
        provider=get_provider(config, state.path),
        context=config.provider_context(manifest.name),
        planner=planner,
        concurrency=concurrency,
        retry=config.retry,
        on_error=on_error,
    )

    def _on_sigint(_signum, _frame):
        executor.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        result = executor.run()
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.report_dir:
        RunReport(result.run_state, args.report_dir, plan_summary=plan.summary()).write()
    return result


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help='Exit 2 when the plan has changes',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_stack(args)
        graph = _build_graph(manifest, config)
        state_path = _state_path(args, manifest, config)
        state = StateStore.load(state_path, manifest.name)
        plan = Planner(graph, state).plan()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except StateCorruptionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STATE

    if args.json_output:
        _emit_json('plan', plan)
    else:
        print(plan.render())

    if args.detailed_exitcode and not plan.is_empty:
        return 2
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_stack(args)
        graph = _build_graph(manifest, config)
        state_path = _state_path(args, manifest, config)

        preflight_rc = _run_preflight(args, config, state_path)
        if preflight_rc is not None:
            return preflight_rc

        state = StateStore.load(state_path, manifest.name)
        planner = Planner(graph, state)
        plan = planner.plan()

        if not args.json_output:
            print(plan.render())
        if plan.is_empty:
            logger.info(f"Stack '{manifest.name}' is up to date")

        logger.info(f"Applying stack '{manifest.name}'")
        result = _execute(args, plan, planner, state, manifest, config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except StateCorruptionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STATE

    if args.json_output:
        _emit_json('apply', plan, result)
    else:
        _print_summary(result)

    return result.exit_code


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_stack(args)
        state_path = _state_path(args, manifest, config)

        preflight_rc = _run_preflight(args, config, state_path)
        if preflight_rc is not None:
            return preflight_rc

        state = StateStore.load(state_path, manifest.name)
        planner = Planner(None, state)
        plan = planner.plan_destroy(manifest.name)

        if plan.is_empty:
            print(f"Nothing to destroy: no resources recorded for stack '{manifest.name}'.")
            return EXIT_OK

        # Confirmation for destructive operation
        if not args.yes:
            print(f"\nWARNING: This will destroy {len(plan.entries)} resource(s) in stack '{manifest.name}':")
            for name in plan.order:
                print(f"  - {name}")
            print("This action cannot be undone.")
            response = input("Continue? [y/N] ").strip().lower()
            if response != 'y':
                print("Aborted.")
                return EXIT_FAILED

        logger.info(f"Destroying stack '{manifest.name}'")
        result = _execute(args, plan, planner, state, manifest, config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except StateCorruptionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STATE

    if args.json_output:
        _emit_json('destroy', plan, result)
    else:
        _print_summary(result)

    return result.exit_code


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Validates the stack document, attribute schemas and the reference graph
    without reading state or calling the provider.
    """
    parser = argparse.ArgumentParser(
        prog='iac-engine stack validate',
        description='Validate stack structure, schemas and references',
    )
    parser.add_argument(
        '--manifest', '-M',
        help='Stack name from stacks/',
    )
    parser.add_argument(
        '--manifest-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline stack JSON',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show the resolved apply order',
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        manifest, config = _load_stack(args)
        graph = _build_graph(manifest, config)
    except ConfigError as e:
        print(f"Stack invalid: {e}", file=sys.stderr)
        return EXIT_CONFIG

    count = len(graph)
    print(f"Stack '{manifest.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    if args.verbose:
        for i, node in enumerate(graph.apply_order(), 1):
            print(f"  {i}. {node.kind}.{node.name}")
    return EXIT_OK
