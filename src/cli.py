#!/usr/bin/env python3
"""CLI entry point for platform-driver.

Verbs:
- plan: Show the actions apply would take (never mutates)
- apply: Reconcile live state with the manifest
- destroy: Tear down every recorded resource in reverse dependency order
- validate: Check manifest structure, references and dependency order
- state: List recorded live state
"""

import logging
import sys
from importlib import metadata

from reconciler.cli import (
    EXIT_INVALID,
    apply_main,
    destroy_main,
    plan_main,
    state_main,
    validate_main,
)

VERB_COMMANDS = {
    "plan": ("Show the actions apply would take", plan_main),
    "apply": ("Reconcile live state with the manifest", apply_main),
    "destroy": ("Destroy all recorded resources", destroy_main),
    "validate": ("Validate manifest structure and dependencies", validate_main),
    "state": ("List recorded live state", state_main),
}


def get_version() -> str:
    """Get the installed package version."""
    try:
        return metadata.version('platform-driver')
    except metadata.PackageNotFoundError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)


def print_usage():
    """Print top-level usage showing verbs."""
    print(f"platform-driver {get_version()}")
    print()
    print("Usage: platform-driver <verb> [options]")
    print()
    print("Commands:")
    for verb, (desc, _) in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'platform-driver <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  platform-driver validate -f manifests/platform.yaml")
    print("  platform-driver plan -f manifests/platform.yaml")
    print("  platform-driver apply -f manifests/platform.yaml --provider memory")
    print("  platform-driver destroy -f manifests/platform.yaml --yes")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"platform-driver {get_version()}")
        return 0

    verb = argv[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown command '{verb}'", file=sys.stderr)
        print_usage()
        return EXIT_INVALID

    _, handler = VERB_COMMANDS[verb]
    return handler(argv[1:])


if __name__ == '__main__':
    sys.exit(main())
