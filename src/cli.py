#!/usr/bin/env python3
"""CLI entry point for iac-engine.

Noun-action subcommands:
- stack: Resource lifecycle (plan/apply/destroy/validate)
- state: State inspection (list/show/taint/untaint)
"""

import logging
import sys
from importlib import metadata

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Resource lifecycle (plan/apply/destroy/validate)",
    "state": "State inspection (list/show/taint/untaint)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed package version ('dev' when running from a checkout)."""
    try:
        return metadata.version('iac-engine')
    except metadata.PackageNotFoundError:
        return 'dev'


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-M', 'web'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: iac-engine stack <action> [options]")
        print()
        print("Actions:")
        print("  plan      Show the changes apply would make")
        print("  apply     Create, update and replace resources to match the stack")
        print("  destroy   Delete every resource recorded for the stack")
        print("  validate  Validate stack structure, schemas and references")
        print()
        print("Run 'iac-engine stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from engine.cli import plan_main
        return plan_main(rest)
    if action == "apply":
        from engine.cli import apply_main
        return apply_main(rest)
    if action == "destroy":
        from engine.cli import destroy_main
        return destroy_main(rest)
    if action == "validate":
        from engine.cli import validate_main
        return validate_main(rest)

    print(f"Error: Unknown stack action '{action}'")
    print("Available actions: plan, apply, destroy, validate")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    if noun == "state":
        from state_cli import main as state_main
        return state_main(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"iac-engine {get_version()}")
    print()
    print("Usage: iac-engine <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'iac-engine <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-engine stack plan -M web")
    print("  iac-engine stack apply -M web --concurrency 8")
    print("  iac-engine stack destroy -M web --yes")
    print("  iac-engine state taint lb -M web")


def main(argv=None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"iac-engine {get_version()}")
        return 0

    if argv[0] in NOUN_COMMANDS:
        return dispatch_noun(argv[0], argv[1:])

    print(f"Error: Unknown command '{argv[0]}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
