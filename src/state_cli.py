"""State inspection CLI.

Usage:
    iac-engine state list -M <stack> [--json-output]
    iac-engine state show <resource> -M <stack>
    iac-engine state taint <resource> -M <stack>
    iac-engine state untaint <resource> -M <stack>

A tainted resource is replaced on the next apply.
"""

import argparse
import json
import sys
from pathlib import Path

from config import ConfigError, load_engine_config
from engine.state import StateCorruptionError, StateStore


def _parser(verb: str, with_resource: bool) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f'iac-engine state {verb}')
    if with_resource:
        parser.add_argument('resource', help='Logical resource name')
    parser.add_argument('--manifest', '-M', required=True, help='Stack name')
    parser.add_argument('--state', help='State file path (default: .states/<stack>/state.json)')
    parser.add_argument('--json-output', action='store_true', help='Output JSON')
    return parser


def _open_store(args) -> StateStore:
    """Load the state store for a stack.

    Raises:
        ConfigError: If engine configuration is invalid
        StateCorruptionError: If the state document is unreadable
    """
    if args.state:
        path = Path(args.state)
    else:
        path = load_engine_config().state_path_for(args.manifest)
    return StateStore.load(path, args.manifest)


def list_state(store: StateStore, json_output: bool = False) -> int:
    """Print every record in apply order."""
    records = store.records()
    if json_output:
        print(json.dumps([records[n].to_dict() for n in store.apply_order], indent=2))
        return 0

    if not records:
        print(f"No resources recorded for stack '{store.stack}'")
        return 0

    for name in store.apply_order:
        record = records[name]
        flags = []
        if record.tainted:
            flags.append('tainted')
        if record.deposed:
            flags.append(f'{len(record.deposed)} deposed')
        suffix = f"  ({', '.join(flags)})" if flags else ''
        print(f"{record.kind}.{name}  {record.identifier}{suffix}")
    return 0


def show_state(store: StateStore, name: str, json_output: bool = False) -> int:
    """Print one record."""
    record = store.get(name)
    if record is None:
        print(f"Error: No resource '{name}' in stack '{store.stack}'", file=sys.stderr)
        return 1

    if json_output:
        print(json.dumps(record.to_dict(), indent=2))
        return 0

    print(f"{record.kind}.{record.name}")
    print(f"  id: {record.identifier}")
    if record.tainted:
        print("  tainted: true")
    for key, value in sorted(record.attributes.items()):
        print(f"  {key}: {json.dumps(value)}")
    for key, value in sorted(record.outputs.items()):
        print(f"  {key}: {json.dumps(value)}  (computed)")
    if record.dependencies:
        print(f"  depends on: {', '.join(record.dependencies)}")
    for ident in record.deposed:
        print(f"  deposed: {ident}")
    return 0


def set_taint(store: StateStore, name: str, tainted: bool) -> int:
    """Mark or clear the taint flag on a record."""
    changed = store.taint(name) if tainted else store.untaint(name)
    if not changed:
        print(f"Error: No resource '{name}' in stack '{store.stack}'", file=sys.stderr)
        return 1
    verb = 'marked as tainted' if tainted else 'untainted'
    print(f"Resource '{name}' {verb}")
    return 0


def main(argv: list) -> int:
    """Entry point for the 'state' noun."""
    if not argv or argv[0].startswith('-'):
        print("Usage: iac-engine state <action> [options]")
        print()
        print("Actions:")
        print("  list      List recorded resources")
        print("  show      Show one recorded resource")
        print("  taint     Force replacement on the next apply")
        print("  untaint   Clear a taint flag")
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action not in ('list', 'show', 'taint', 'untaint'):
        print(f"Error: Unknown state action '{action}'")
        print("Available actions: list, show, taint, untaint")
        return 1

    args = _parser(action, with_resource=action != 'list').parse_args(rest)
    try:
        store = _open_store(args)
        if action == 'list':
            return list_state(store, args.json_output)
        if action == 'show':
            return show_state(store, args.resource, args.json_output)
        return set_taint(store, args.resource, tainted=action == 'taint')
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except StateCorruptionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 3
