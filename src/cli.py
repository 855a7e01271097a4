#!/usr/bin/env python3
"""CLI entry point for converger.

Noun-action subcommands:
- stack: Converge declared resources (plan/apply/destroy/validate/refresh/outputs)
- state: Inspect and administer the state record (show/force-unlock)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Resource lifecycle (plan/apply/destroy/validate/refresh/outputs)",
    "state": "State record administration (show/force-unlock)",
}

STACK_ACTIONS = {
    "plan": "Preview changes without applying them",
    "apply": "Converge live state to the stack",
    "destroy": "Delete every instance recorded in state",
    "validate": "Validate references, types and cycles",
    "refresh": "Re-read observed instances from the provider",
    "outputs": "Show declared outputs from observed state",
}

STATE_ACTIONS = {
    "show": "Print the persisted state record",
    "force-unlock": "Remove a lock left by a crashed run",
}


def _dispatch(noun: str, actions: dict, argv: list) -> int:
    """Dispatch a noun to its action-specific handler.

    Args:
        noun: The noun command (e.g., "stack")
        actions: Action name -> description for usage output
        argv: Arguments after the noun (e.g., ['apply', '-f', 'web.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print(f"Usage: converger {noun} <action> [options]")
        print()
        print("Actions:")
        for action, desc in actions.items():
            print(f"  {action:<14} {desc}")
        print()
        print(f"Run 'converger {noun} <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from converger import cli as verbs

    handlers = {
        ('stack', 'plan'): verbs.plan_main,
        ('stack', 'apply'): verbs.apply_main,
        ('stack', 'destroy'): verbs.destroy_main,
        ('stack', 'validate'): verbs.validate_main,
        ('stack', 'refresh'): verbs.refresh_main,
        ('stack', 'outputs'): verbs.outputs_main,
        ('state', 'show'): verbs.state_show_main,
        ('state', 'force-unlock'): verbs.force_unlock_main,
    }
    handler = handlers.get((noun, action))
    if handler is None:
        print(f"Error: Unknown {noun} action '{action}'")
        print(f"Available actions: {', '.join(actions)}")
        return 1
    rc: int = handler(rest)
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler."""
    if noun == "stack":
        return _dispatch("stack", STACK_ACTIONS, argv)
    if noun == "state":
        return _dispatch("state", STATE_ACTIONS, argv)
    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, 'dev' outside a tagged checkout."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"converger {get_version()}")
    print()
    print("Usage: converger <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'converger <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  converger stack plan -f web.yaml")
    print("  converger stack apply -f web.yaml --yes")
    print("  converger stack destroy --yes")
    print("  converger state show")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"converger {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
