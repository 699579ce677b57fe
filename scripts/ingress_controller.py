#!/usr/bin/env python3
"""
Ingress CIDR Controller

Keeps security group ingress rules and EKS public endpoint access lists in
line with the CIDR groups resources ask for through their tags.

Usage:
    # One dry-run pass in the current account and region
    python ingress_controller.py --cidr office=10.0.0.0/24 --once --dry-run

    # Explicit roles in two regions, every 5 minutes
    python ingress_controller.py -c office=10.0.0.0/24 -c vpn=10.8.0.0/16 \\
        -a arn:aws:iam::111222333444:role/ctrl-cidr -r eu-west-1 -r us-east-1

    # Every account of the organization
    python ingress_controller.py --cidr-file cidr-groups.yaml \\
        --root-role arn:aws:iam::999999999999:role/org-reader --sub-role /ctrl-cidr

Resources opt in with two tags:
    ingress.controlant.com/sources = office:vpn
    ingress.controlant.com/ports   = 443:8080/udp

Environment:
    INGRESS_KEY          - Tag key prefix (default: ingress.controlant.com)
    INGRESS_REGIONS      - Comma-separated regions when --region is not given
    RECONCILE_INTERVAL   - Seconds between ticks (default: 300)
    MAX_PARALLEL_SCOPES  - Cap on concurrently reconciled scopes (default: all)
    LOG_LEVEL            - Logging level (default: INFO)

Exit codes:
    0 - Success
    1 - Configuration error, a scope failed, or account discovery failed with --once
    130 - Interrupted
"""

import argparse
import logging
import os
import sys
import time
from typing import Callable, List, Mapping, Optional, Tuple

import yaml

from fanout import (
    AuthMode,
    ControllerConfig,
    IngressController,
    ReconcileError,
    TickResult,
)
from ingress_tags import (
    DEFAULT_INGRESS_KEY,
    TAG_SEPARATOR,
    CidrRegistry,
    ConfigError,
    IngressTagKeys,
    parse_cidr_mapping,
    parse_network,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5 * 60
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def load_cidr_file(path: str) -> List[Tuple[str, str]]:
    """Load ``(name, prefix)`` pairs from a YAML CIDR group file.

    Expected shape::

        cidr_groups:
          office:
            description: Office egress
            entries:
              - 10.0.0.0/24
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load CIDR file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping with cidr_groups")
    groups = data.get('cidr_groups') or {}
    if not isinstance(groups, dict):
        raise ConfigError(f"{path}: 'cidr_groups' must be a mapping")

    mappings = []
    for name, group in groups.items():
        name = str(name)
        if TAG_SEPARATOR in name:
            raise ConfigError(f"{path}: colon (:) not allowed in cidr name '{name}'")
        entries = group.get('entries', []) if isinstance(group, dict) else group
        if not isinstance(entries, list):
            raise ConfigError(f"{path}: entries of '{name}' must be a list")
        for entry in entries:
            mappings.append((name, parse_network(str(entry))))
    return mappings


def build_parser(environ: Mapping[str, str] = os.environ) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Reconcile tagged AWS ingress allow-lists against named CIDR groups',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--cidr', '-c', action='append', default=[], metavar='NAME=CIDR',
                        help='CIDR group entry, repeat to provide more; '
                             'entries with the same name are grouped, names cannot contain ":"')
    parser.add_argument('--cidr-file', default=None,
                        help='YAML file with additional cidr_groups')
    parser.add_argument('--assume', '-a', action='append', default=None, metavar='ROLE_ARN',
                        help='IAM role to assume, repeat to provide more')
    parser.add_argument('--root-role', default=None,
                        help='IAM role used to list the accounts of the organization')
    parser.add_argument('--sub-role', default=None,
                        help='IAM role name (with path) assumed in every discovered account')
    parser.add_argument('--region', '-r', action='append', default=None,
                        help='AWS region to manage, repeat for more (default: current region)')
    parser.add_argument('--ingress-key', '-i',
                        default=environ.get('INGRESS_KEY', DEFAULT_INGRESS_KEY),
                        help=f'Tag key prefix for ingress rules (default: {DEFAULT_INGRESS_KEY})')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute changes but do not apply them')
    parser.add_argument('--once', action='store_true',
                        help='Run a single reconciliation instead of running as a service')
    parser.add_argument('--deprecate', '-d', action='append', default=[], metavar='CIDR',
                        help='CIDR to deprecate, repeat for more (collected, not yet acted on)')
    parser.add_argument('--interval', type=int,
                        default=int(environ.get('RECONCILE_INTERVAL', DEFAULT_INTERVAL)),
                        help=f'Seconds between reconciliations (default: {DEFAULT_INTERVAL})')
    parser.add_argument('--max-workers', type=int,
                        default=int(environ['MAX_PARALLEL_SCOPES'])
                        if environ.get('MAX_PARALLEL_SCOPES') else None,
                        help='Maximum scopes reconciled in parallel (default: all)')
    parser.add_argument('--log-level', default=environ.get('LOG_LEVEL', 'INFO'),
                        help='Logging level (default: INFO)')
    return parser


def resolve_auth_mode(args: argparse.Namespace) -> AuthMode:
    if args.assume and (args.root_role or args.sub_role):
        raise ConfigError("--assume cannot be combined with --root-role/--sub-role")
    if args.root_role and not args.sub_role:
        raise ConfigError("--root-role requires --sub-role")

    if args.assume:
        return AuthMode.assume(args.assume)
    if args.sub_role:
        return AuthMode.discover(args.sub_role, root_role=args.root_role)
    return AuthMode.local()


def load_config(args: argparse.Namespace,
                environ: Mapping[str, str] = os.environ) -> ControllerConfig:
    """Validate parsed arguments and build the controller config."""
    mappings = [parse_cidr_mapping(directive) for directive in args.cidr]
    if args.cidr_file:
        mappings.extend(load_cidr_file(args.cidr_file))
    if not mappings:
        raise ConfigError("at least one --cidr (or a --cidr-file entry) is required")

    regions = args.region
    if not regions and environ.get('INGRESS_REGIONS'):
        regions = [r.strip() for r in environ['INGRESS_REGIONS'].split(',') if r.strip()]

    if args.interval <= 0:
        raise ConfigError("--interval must be a positive number of seconds")

    return ControllerConfig(
        registry=CidrRegistry.from_mappings(mappings),
        keys=IngressTagKeys.from_ingress_key(args.ingress_key),
        auth_mode=resolve_auth_mode(args),
        regions=tuple(regions or ()),
        dry_run=args.dry_run,
        max_workers=args.max_workers,
        deprecated_cidrs=tuple(parse_network(c) for c in args.deprecate),
    )


# ---------------------------------------------------------------------------
# Run Loop
# ---------------------------------------------------------------------------

def log_tick(result: TickResult) -> None:
    if result.discovery_error:
        logger.warning("tick skipped: account discovery failed")
        return
    skipped = sum(1 for r in result.scopes if r.status == "skipped")
    logger.info(f"tick done: {len(result.scopes)} scope(s), {result.action_count} change(s), "
                f"{skipped} skipped, {len(result.failed)} failed")
    for failure in result.failed:
        logger.error(f"   {failure.scope.label}: {failure.error}")


def run_forever(controller: IngressController, interval: int, once: bool = False,
                sleep: Callable[[float], None] = time.sleep) -> TickResult:
    """Run ticks until ``once`` or a scope fails.

    Returns the last tick result; raises ReconcileError after a tick in which
    any scope failed, or when a single run could not discover its accounts.
    """
    while True:
        result = controller.run_tick(backoff=not once)
        log_tick(result)

        if once and result.discovery_error:
            raise ReconcileError(f"account discovery failed: {result.discovery_error}")

        if result.has_errors:
            labels = ', '.join(r.scope.label for r in result.failed)
            raise ReconcileError(f"reconciliation failed for: {labels}")

        if once:
            return result
        sleep(interval)


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args)
        logger.info(f"loaded {len(config.registry)} CIDR group(s): {', '.join(config.registry.names())}")
        logger.info(f"auth mode: {config.auth_mode.mode}, tags: {config.keys.sources}, {config.keys.ports}"
                    f"{' (dry run)' if config.dry_run else ''}")
        if config.deprecated_cidrs:
            logger.info(f"deprecated CIDRs (not acted on): {', '.join(config.deprecated_cidrs)}")

        run_forever(IngressController(config), args.interval, once=args.once)

    except KeyboardInterrupt:
        print("\nAborted by user", file=sys.stderr)
        sys.exit(130)
    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except ReconcileError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
