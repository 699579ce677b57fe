#!/usr/bin/env python3
"""
Ingress CIDR Controller - Scope Fan-Out

Resolves the configured authentication mode into (credentials, region)
scopes and reconciles every scope of a tick in parallel.

Authentication modes:
    local     - ambient credentials, one scope per region
    assume    - explicit role ARNs x regions
    discover  - every ACTIVE account of an AWS Organization, reached through
                a fixed sub-role name, x regions

Scopes share nothing but the read-only controller config. A failing scope is
recorded and does not stop the others; a role that cannot be assumed means the
scope has nothing to do.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ingress_tags import CidrRegistry, ConfigError, IngressTagKeys, ProviderDataError
from reconcile import RETRY_CONFIG, ReconcileAction, iter_pages, reconcile_scope

logger = logging.getLogger(__name__)


SESSION_NAME = "ctrl-cidr"
DISCOVERY_BACKOFF = (30.0, 120.0)


class ReconcileError(RuntimeError):
    """One or more scopes failed during a tick."""


# ---------------------------------------------------------------------------
# Scopes & Auth Modes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Scope:
    """One (credential identity, region) pair."""
    region: str
    role_arn: Optional[str] = None
    # Label as <account>:<role>/<region>
    show_role: bool = field(default=False, compare=False)

    @property
    def identity(self) -> str:
        if self.role_arn is None:
            return "local"
        # arn:aws:iam::<account>:role/<path/name>
        parts = self.role_arn.split(":")
        if len(parts) <= 5 or not parts[4]:
            return self.role_arn
        if self.show_role:
            role = parts[5].split("/", 1)[-1]
            return f"{parts[4]}:{role}"
        return parts[4]

    @property
    def label(self) -> str:
        return f"{self.identity}/{self.region}"


@dataclass(frozen=True)
class AuthMode:
    mode: str  # local, assume, discover
    roles: Tuple[str, ...] = ()
    root_role: Optional[str] = None
    sub_role: Optional[str] = None

    @classmethod
    def local(cls) -> "AuthMode":
        return cls(mode="local")

    @classmethod
    def assume(cls, roles: Sequence[str]) -> "AuthMode":
        return cls(mode="assume", roles=tuple(roles))

    @classmethod
    def discover(cls, sub_role: str, root_role: Optional[str] = None) -> "AuthMode":
        return cls(mode="discover", root_role=root_role, sub_role=sub_role)


@dataclass(frozen=True)
class ControllerConfig:
    """Everything a tick needs; built once at startup and never mutated."""
    registry: CidrRegistry
    keys: IngressTagKeys
    auth_mode: AuthMode = field(default_factory=AuthMode.local)
    regions: Tuple[str, ...] = ()
    dry_run: bool = False
    max_workers: Optional[int] = None
    discovery_backoff: Tuple[float, float] = DISCOVERY_BACKOFF
    deprecated_cidrs: Tuple[str, ...] = ()


@dataclass
class ScopeResult:
    scope: Scope
    status: str  # ok, skipped, error
    actions: List[ReconcileAction] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TickResult:
    scopes: List[ScopeResult] = field(default_factory=list)
    discovery_error: Optional[str] = None

    @property
    def failed(self) -> List[ScopeResult]:
        return [r for r in self.scopes if r.status == "error"]

    @property
    def has_errors(self) -> bool:
        return len(self.failed) > 0

    @property
    def action_count(self) -> int:
        return sum(len(r.actions) for r in self.scopes)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialResolver:
    """Turns scopes into boto3 sessions.

    This is the only place that reads ambient AWS credentials; tests swap in
    a resolver that hands out fake sessions.
    """

    def __init__(self, session_factory: Callable[..., boto3.Session] = boto3.Session,
                 session_name: str = SESSION_NAME):
        self.session_factory = session_factory
        self.session_name = session_name

    def ambient_session(self, region: Optional[str] = None) -> boto3.Session:
        return self.session_factory(region_name=region)

    def ambient_region(self) -> Optional[str]:
        return self.session_factory().region_name

    def assume(self, role_arn: str, region: str) -> boto3.Session:
        """Assume ``role_arn`` with ambient credentials and return a session for it."""
        sts = self.ambient_session(region).client("sts", config=RETRY_CONFIG)
        creds = sts.assume_role(
            RoleArn=role_arn,
            RoleSessionName=self.session_name,
        )["Credentials"]

        return self.session_factory(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=region,
        )

    def session_for(self, scope: Scope) -> Optional[boto3.Session]:
        """Session for ``scope``, or ``None`` when its role is not usable."""
        if scope.role_arn is None:
            return self.ambient_session(scope.region)

        try:
            session = self.assume(scope.role_arn, scope.region)
            session.client("sts", config=RETRY_CONFIG).get_caller_identity()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "?")
            logger.warning(f"[{scope.label}] cannot use role {scope.role_arn} ({code}), "
                           f"nothing to do in this scope")
            return None
        return session


# ---------------------------------------------------------------------------
# Scope Resolution
# ---------------------------------------------------------------------------

def sub_role_arn(account_id: str, sub_role: str) -> str:
    """Role ARN for ``sub_role`` (name with optional path) in ``account_id``."""
    path = sub_role if sub_role.startswith("/") else f"/{sub_role}"
    return f"arn:aws:iam::{account_id}:role{path}"


def resolve_regions(regions: Sequence[str], resolver: CredentialResolver) -> List[str]:
    if regions:
        return list(regions)
    region = resolver.ambient_region()
    if not region:
        raise ConfigError("failed to find the current AWS region; pass --region")
    return [region]


def discover_accounts(resolver: CredentialResolver, root_role: Optional[str],
                      region: str) -> List[str]:
    """List ACTIVE account IDs of the organization visible to ``root_role``."""
    if root_role:
        session = resolver.assume(root_role, region)
    else:
        session = resolver.ambient_session(region)
    org = session.client("organizations", config=RETRY_CONFIG)

    accounts = []
    for account in iter_pages(org, "list_accounts", "Accounts"):
        if "Id" not in account:
            raise ProviderDataError(f"organization account without Id: {account}")
        if account.get("Status", "ACTIVE") != "ACTIVE":
            logger.debug(f"skipping {account.get('Status')} account {account['Id']}")
            continue
        accounts.append(account["Id"])
    return accounts


def resolve_scopes(auth_mode: AuthMode, regions: Sequence[str],
                   resolver: CredentialResolver) -> List[Scope]:
    """Expand an auth mode into the scopes of one tick.

    Organization discovery errors propagate to the caller.
    """
    if auth_mode.mode == "local":
        return [Scope(region=region) for region in regions]

    if auth_mode.mode == "assume":
        return [Scope(region=region, role_arn=role, show_role=True)
                for role in auth_mode.roles for region in regions]

    if auth_mode.mode == "discover":
        if not auth_mode.sub_role:
            raise ConfigError("discover mode requires a sub-role")
        accounts = discover_accounts(resolver, auth_mode.root_role, regions[0])
        logger.info(f"discovered {len(accounts)} accounts in the organization")
        return [Scope(region=region, role_arn=sub_role_arn(account, auth_mode.sub_role))
                for account in accounts for region in regions]

    raise ConfigError(f"unknown auth mode '{auth_mode.mode}'")


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class IngressController:
    """Runs one reconciliation tick across all scopes."""

    def __init__(self, config: ControllerConfig,
                 resolver: Optional[CredentialResolver] = None,
                 scope_runner: Callable[..., List[ReconcileAction]] = reconcile_scope,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.resolver = resolver or CredentialResolver()
        self.scope_runner = scope_runner
        self.sleep = sleep

    def run_scope(self, scope: Scope) -> ScopeResult:
        """Reconcile one scope. Never raises; failures land in the result."""
        try:
            session = self.resolver.session_for(scope)
            if session is None:
                return ScopeResult(scope=scope, status="skipped")

            actions = self.scope_runner(
                session,
                self.config.registry,
                self.config.keys,
                dry_run=self.config.dry_run,
                label=scope.label,
            )
        except Exception as e:
            logger.error(f"❌ [{scope.label}] reconciliation failed: {e}")
            return ScopeResult(scope=scope, status="error", error=str(e))

        logger.info(f"✅ [{scope.label}] reconciled, {len(actions)} change(s)")
        return ScopeResult(scope=scope, status="ok", actions=actions)

    def run_tick(self, backoff: bool = True) -> TickResult:
        """Resolve scopes and reconcile all of them in parallel.

        With ``backoff`` a failed account discovery sleeps a random interval
        before returning, delaying the next tick.
        """
        regions = resolve_regions(self.config.regions, self.resolver)

        try:
            scopes = resolve_scopes(self.config.auth_mode, regions, self.resolver)
        except (ClientError, BotoCoreError, ProviderDataError) as e:
            if not backoff:
                logger.error(f"account discovery failed: {e}")
                return TickResult(discovery_error=str(e))
            delay = random.uniform(*self.config.discovery_backoff)
            logger.error(f"account discovery failed: {e}; retrying in {delay:.0f}s")
            self.sleep(delay)
            return TickResult(discovery_error=str(e))

        if not scopes:
            logger.info("no scopes to reconcile")
            return TickResult()

        workers = min(self.config.max_workers or len(scopes), len(scopes))
        results = []
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.run_scope, scope): scope for scope in scopes}
            for future in as_completed(futures):
                results.append(future.result())

        results.sort(key=lambda r: r.scope.label)
        return TickResult(scopes=results)
