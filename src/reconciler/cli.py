"""CLI handlers for reconciliation verbs (plan, apply, destroy, validate, state).

Usage:
    platform-driver plan -f <manifest> [--destroy] [--json-output]
    platform-driver apply -f <manifest> [--allow-replace] [--yes] [--json-output]
    platform-driver destroy -f <manifest> [--yes] [--json-output]
    platform-driver validate -f <manifest>
    platform-driver state -f <manifest>

Exit codes:
    0  plan printed / run complete
    1  partial failure, cancelled or aborted
    2  invalid manifest, dependency cycle, or configuration/state error
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from config import ConfigError, DriverConfig, load_config
from manifest import Manifest, load_manifest
from reconciler.errors import DependencyCycleError, ManifestError, StateStoreError
from reconciler.executor import Executor
from reconciler.graph import ResourceGraph
from reconciler.planner import Plan, Planner
from reconciler.provider import HttpProvider, InMemoryProvider, ProviderRegistry
from reconciler.secrets import SecretMaterializer
from reconciler.state import FileStateStore, StateStore
from reporting.report import ApplyReport, format_plan

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(prog=f'platform-driver {verb}', description=description)
    parser.add_argument(
        '--manifest-file', '-f',
        help='Path to manifest file (YAML or JSON)',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Driver config file (default: $PLATFORM_DRIVER_CONFIG or ./platform-driver.yaml)',
    )
    parser.add_argument(
        '--state-file',
        type=Path,
        help='State file path (override: PLATFORM_DRIVER_STATE_FILE)',
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


def _add_execution_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--provider',
        choices=('http', 'memory'),
        help='Provider backend (override: PLATFORM_DRIVER_PROVIDER)',
    )
    parser.add_argument(
        '--provider-url',
        help='Provider API base URL (override: PLATFORM_DRIVER_PROVIDER_URL)',
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Max concurrent actions per level',
    )
    parser.add_argument(
        '--vault-file',
        type=Path,
        help='YAML file backing vault secret sources',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Write JSON and markdown reports to this directory',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompts',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output or not root_logger.handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)
        root_logger.setLevel(logging.INFO)

    if verbose:
        root_logger.setLevel(logging.DEBUG)


def _load_config(args) -> DriverConfig:
    """Load config and apply CLI overrides.

    Raises:
        SystemExit: On configuration errors
    """
    try:
        config = load_config(args.config)
        config.apply_overrides(
            state_file=args.state_file,
            provider=getattr(args, 'provider', None),
            provider_url=getattr(args, 'provider_url', None),
            concurrency=getattr(args, 'concurrency', None),
            vault_file=getattr(args, 'vault_file', None),
            report_dir=getattr(args, 'report_dir', None),
        )
    except ConfigError as e:
        print(f"Error in configuration: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    return config


def _load_graph(args) -> tuple[Manifest, ResourceGraph]:
    """Load manifest and resolve its dependency graph.

    Raises:
        SystemExit: On manifest or cycle errors (before any remote call)
    """
    if not args.manifest_file and not args.manifest_json:
        print("Error: specify a manifest with -f or --manifest-json", file=sys.stderr)
        sys.exit(EXIT_INVALID)

    try:
        manifest = load_manifest(file_path=args.manifest_file, json_str=args.manifest_json)
        graph = ResourceGraph(manifest)
    except DependencyCycleError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    except ManifestError as e:
        print(f"Error loading manifest: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)
    return manifest, graph


def _open_state(config: DriverConfig, manifest: Manifest) -> StateStore:
    """Open the state store for a manifest.

    Raises:
        SystemExit: If the state file cannot be read
    """
    store = FileStateStore(config.state_file, manifest_name=manifest.name)
    try:
        return store.open()
    except StateStoreError as e:
        print(f"Error opening state: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)


def build_providers(config: DriverConfig) -> ProviderRegistry:
    """Create provider clients from config."""
    if config.provider == 'memory':
        logger.warning("Using in-memory provider; nothing is provisioned remotely")
        return ProviderRegistry(default=InMemoryProvider())
    return ProviderRegistry(default=HttpProvider(
        config.provider_url,
        token=config.get_provider_token(),
        timeout=config.provider_timeout,
    ))


def _confirm(plan: Plan, args) -> bool:
    """Ask before actions that destroy persistent data."""
    risky = plan.confirmations
    if not risky or args.yes:
        return True
    print("\nWARNING: the following actions destroy persistent data:")
    for action in risky:
        print(f"  ✗ {action.kind} {action.resource_id}: {action.reason}")
    print("This action cannot be undone.")
    response = input("Continue? [y/N] ").strip().lower()
    return response == 'y'


def _execute(args, config: DriverConfig, manifest: Manifest, graph: ResourceGraph,
             state: StateStore, plan: Plan, allow_destructive: bool) -> ApplyReport:
    """Run the executor with SIGINT mapped to cancellation."""
    executor = Executor(
        graph=graph,
        state=state,
        providers=build_providers(config),
        materializer=SecretMaterializer(manifest.secrets, vault_file=config.vault_file),
        concurrency=manifest.settings.concurrency or config.concurrency,
        max_attempts=manifest.settings.max_attempts or config.max_attempts,
        backoff_base=config.backoff_base,
        backoff_max=config.backoff_max,
        allow_destructive=allow_destructive,
    )

    def _on_interrupt(signum, frame):
        executor.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        report = executor.run(plan)
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.format_table())

    if config.report_dir is not None:
        for path in report.write(config.report_dir):
            logger.debug(f"Wrote report {path}")

    return report


def _run_verb(args, destroy: bool) -> int:
    config = _load_config(args)
    try:
        config.validate()
    except ConfigError as e:
        print(f"Error in configuration: {e}", file=sys.stderr)
        return EXIT_INVALID

    manifest, graph = _load_graph(args)
    state = _open_state(config, manifest)
    try:
        planner = Planner(graph, state.snapshot())
        plan = planner.plan_destroy() if destroy else planner.plan()

        if destroy and not args.yes:
            print(f"\nWARNING: This will destroy all resources in manifest '{manifest.name}'.")
            print("This action cannot be undone.")
            response = input("Continue? [y/N] ").strip().lower()
            if response != 'y':
                print("Aborted.")
                return EXIT_FAILED
            confirmed = True
        elif destroy:
            confirmed = True
        else:
            confirmed = args.allow_replace or _confirm(plan, args)
            if plan.confirmations and not confirmed:
                print("Aborted.")
                return EXIT_FAILED

        verb = 'Destroying' if destroy else 'Applying'
        logger.info(f"{verb} manifest '{manifest.name}' ({len(plan.actions)} actions)")
        report = _execute(args, config, manifest, graph, state, plan, allow_destructive=confirmed)
    finally:
        try:
            state.close()
        except StateStoreError as e:
            logger.error(f"Closing state failed: {e}")

    return EXIT_OK if report.success else EXIT_FAILED


def plan_main(argv: list) -> int:
    """Handle 'plan' verb: print actions, never mutate."""
    parser = _common_parser('plan', 'Show the actions apply would take')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Show the teardown plan instead',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    manifest, graph = _load_graph(args)
    state = _open_state(config, manifest)
    try:
        snapshot = state.snapshot()
    finally:
        state.close(flush=False)

    planner = Planner(graph, snapshot)
    plan = planner.plan_destroy() if args.destroy else planner.plan()

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(format_plan(plan))
        for action in plan.errors:
            print(f"  ✗ {action.resource_id}: {action.error}", file=sys.stderr)
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Reconcile live state with the manifest')
    _add_execution_options(parser)
    parser.add_argument(
        '--allow-replace',
        action='store_true',
        help='Allow replacements that destroy persistent data',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_verb(args, destroy=False)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb: tear down in reverse dependency order."""
    parser = _common_parser('destroy', 'Destroy every resource recorded for the manifest')
    _add_execution_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run_verb(args, destroy=True)


def validate_main(argv: list) -> int:
    """Handle 'validate' verb: parse, validate references, resolve order."""
    parser = _common_parser('validate', 'Validate manifest structure and dependencies')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    manifest, graph = _load_graph(args)
    levels = graph.levels()
    if args.json_output:
        print(json.dumps({'manifest': manifest.name, 'valid': True, 'levels': levels}, indent=2))
        return EXIT_OK

    count = len(graph)
    print(f"Manifest '{manifest.name}' is valid "
          f"({count} resource{'s' if count != 1 else ''}, {len(levels)} levels)")
    for i, level in enumerate(levels):
        print(f"  level {i}: {', '.join(level)}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state' verb: list recorded resources."""
    parser = _common_parser('state', 'List recorded live state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    manifest, _ = _load_graph(args)
    state = _open_state(config, manifest)
    try:
        snapshot = state.snapshot()
    finally:
        state.close(flush=False)

    if args.json_output:
        print(json.dumps({rid: rec.to_dict() for rid, rec in sorted(snapshot.items())}, indent=2))
        return EXIT_OK

    if not snapshot:
        print(f"No state recorded for manifest '{manifest.name}'")
        return EXIT_OK
    for rid, record in sorted(snapshot.items()):
        print(f"{rid}  {record.provider_id}  last applied {record.last_applied_at:.0f}")
    return EXIT_OK
