#!/usr/bin/env python3
"""
Ingress CIDR Controller - Resource Reconcilers

Walks tagged resources inside one (credentials, region) scope and additively
patches them towards the state their tags ask for:

  - EC2 security groups: missing ingress rules are authorized, one call per
    (port, protocol) group.
  - EKS clusters: missing prefixes are merged into the public endpoint
    access list with a single update call.

Every reconciler honours dry-run: discovery and diffing run as usual but no
mutating call is issued. Errors are not caught here; a failure on one
resource aborts the whole scope pass.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from botocore.config import Config

from ingress_tags import (
    CidrRegistry,
    IngressTagKeys,
    ProviderDataError,
    current_rules,
    desired_rules,
    group_by_port,
    has_ingress_tags,
    merge_public_access_cidrs,
    missing_rules,
    parse_ports,
    parse_sources,
    tag_map,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config & Constants
# ---------------------------------------------------------------------------

RULE_DESCRIPTION = "manager:ctrl-cidr"

CONNECT_TIMEOUT = int(os.getenv("AWS_CONNECT_TIMEOUT", "10"))
READ_TIMEOUT = int(os.getenv("AWS_READ_TIMEOUT", "60"))
MAX_ATTEMPTS = int(os.getenv("AWS_MAX_ATTEMPTS", "5"))

RETRY_CONFIG = Config(
    retries={
        "mode": os.getenv("AWS_RETRY_MODE", "standard"),
        "max_attempts": MAX_ATTEMPTS,
    },
    connect_timeout=CONNECT_TIMEOUT,
    read_timeout=READ_TIMEOUT,
)


@dataclass
class ReconcileAction:
    """A change the controller made (or would make, in dry-run)."""
    kind: str           # security_group, eks_cluster
    resource_id: str
    action: str         # authorize_ingress, update_public_access
    applied: bool
    details: Dict[str, Any] = field(default_factory=dict)


def iter_pages(client, operation: str, result_key: str, **kwargs) -> Iterator[Any]:
    """Lazily yield every item of a paginated operation as one sequence."""
    paginator = client.get_paginator(operation)
    for page in paginator.paginate(**kwargs):
        for item in page.get(result_key, []):
            yield item


# ---------------------------------------------------------------------------
# EC2 Security Groups
# ---------------------------------------------------------------------------

class SecurityGroupReconciler:
    """Authorizes missing ingress rules on tagged security groups."""

    kind = "security_group"

    def __init__(self, ec2_client, registry: CidrRegistry, keys: IngressTagKeys,
                 dry_run: bool = False, label: str = "-"):
        self.ec2 = ec2_client
        self.registry = registry
        self.keys = keys
        self.dry_run = dry_run
        self.label = label

    def discover(self) -> Iterator[Dict[str, Any]]:
        """Security groups carrying both ingress tag keys."""
        return iter_pages(
            self.ec2,
            "describe_security_groups",
            "SecurityGroups",
            Filters=[
                {"Name": "tag-key", "Values": [self.keys.sources]},
                {"Name": "tag-key", "Values": [self.keys.ports]},
            ],
        )

    def reconcile(self) -> List[ReconcileAction]:
        actions = []
        for group in self.discover():
            actions.extend(self.reconcile_group(group))
        return actions

    def reconcile_group(self, group: Dict[str, Any]) -> List[ReconcileAction]:
        group_id = group.get("GroupId")
        if not group_id:
            raise ProviderDataError(f"security group without GroupId: {group}")

        desired = desired_rules(tag_map(group.get("Tags")), self.keys, self.registry)
        if desired is None:
            logger.debug(f"[{self.label}] {group_id} is missing an ingress tag, skipping")
            return []

        current = current_rules(group.get("IpPermissions"))
        logger.info(f"[{self.label}] security group {group_id}: "
                    f"{len(desired)} desired, {len(current)} current ingress rules")

        missing = missing_rules(desired, current)
        if not missing:
            logger.info(f"[{self.label}] no ingress updates needed for {group_id}")
            return []

        actions = []
        for (port, protocol), prefixes in group_by_port(missing).items():
            permission = self.build_permission(port, protocol, prefixes)
            logger.info(f"[{self.label}] adding ingress on {group_id} "
                        f"{port}/{protocol}: {', '.join(prefixes)}")

            if self.dry_run:
                logger.info(f"[{self.label}] dry run: not authorizing ingress on {group_id}")
            else:
                self.ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[permission],
                )

            actions.append(ReconcileAction(
                kind=self.kind,
                resource_id=group_id,
                action="authorize_ingress",
                applied=not self.dry_run,
                details={"port": port, "protocol": protocol, "cidrs": list(prefixes)},
            ))
        return actions

    @staticmethod
    def build_permission(port: int, protocol: str, prefixes: List[str]) -> Dict[str, Any]:
        """Build one IpPermission covering ``prefixes`` on ``port/protocol``."""
        ipv4 = [{"CidrIp": p, "Description": RULE_DESCRIPTION} for p in prefixes if ":" not in p]
        ipv6 = [{"CidrIpv6": p, "Description": RULE_DESCRIPTION} for p in prefixes if ":" in p]

        permission: Dict[str, Any] = {
            "IpProtocol": protocol,
            "FromPort": port,
            "ToPort": port,
        }
        if ipv4:
            permission["IpRanges"] = ipv4
        if ipv6:
            permission["Ipv6Ranges"] = ipv6
        return permission


# ---------------------------------------------------------------------------
# EKS Clusters
# ---------------------------------------------------------------------------

class ClusterReconciler:
    """Merges tagged source prefixes into EKS public endpoint access lists."""

    kind = "eks_cluster"

    def __init__(self, eks_client, registry: CidrRegistry, keys: IngressTagKeys,
                 dry_run: bool = False, label: str = "-"):
        self.eks = eks_client
        self.registry = registry
        self.keys = keys
        self.dry_run = dry_run
        self.label = label

    def discover(self) -> Iterator[str]:
        return iter_pages(self.eks, "list_clusters", "clusters")

    def reconcile(self) -> List[ReconcileAction]:
        actions = []
        for name in self.discover():
            action = self.reconcile_cluster(name)
            if action:
                actions.append(action)
        return actions

    def reconcile_cluster(self, name: str) -> Optional[ReconcileAction]:
        cluster = self.eks.describe_cluster(name=name).get("cluster")
        if cluster is None:
            raise ProviderDataError(f"describe_cluster returned no cluster for {name}")

        tags = cluster.get("tags") or {}
        if not has_ingress_tags(tags, self.keys):
            logger.debug(f"[{self.label}] EKS cluster {name} is missing an ingress tag, skipping")
            return None

        # Ports have no dimension in the access list but must still parse
        parse_ports(tags[self.keys.ports])
        additions = self.registry.resolve(parse_sources(tags[self.keys.sources]))

        vpc_config = cluster.get("resourcesVpcConfig")
        if vpc_config is None or vpc_config.get("publicAccessCidrs") is None:
            raise ProviderDataError(f"EKS cluster {name} has no resourcesVpcConfig.publicAccessCidrs")
        current = vpc_config["publicAccessCidrs"]

        logger.info(f"[{self.label}] EKS cluster {name} public access CIDRs: {', '.join(current)}")
        merged, changed = merge_public_access_cidrs(current, additions)
        if not changed:
            logger.info(f"[{self.label}] no updates needed for EKS cluster {name}")
            return None

        logger.info(f"[{self.label}] new public access CIDRs for {name}: {', '.join(merged)}")
        if self.dry_run:
            logger.info(f"[{self.label}] dry run: not updating EKS cluster {name}")
        else:
            resp = self.eks.update_cluster_config(
                name=name,
                resourcesVpcConfig={"publicAccessCidrs": merged},
            )
            logger.info(f"[{self.label}] update {resp.get('update', {}).get('id', '?')} "
                        f"started for EKS cluster {name}")

        return ReconcileAction(
            kind=self.kind,
            resource_id=name,
            action="update_public_access",
            applied=not self.dry_run,
            details={"before": sorted(set(current)), "after": merged},
        )


# ---------------------------------------------------------------------------
# Scope pass
# ---------------------------------------------------------------------------

def reconcile_scope(session, registry: CidrRegistry, keys: IngressTagKeys,
                    dry_run: bool = False, label: str = "-") -> List[ReconcileAction]:
    """Run every reconciler against one boto3 session (one account/region)."""
    reconcilers = [
        SecurityGroupReconciler(session.client("ec2", config=RETRY_CONFIG),
                                registry, keys, dry_run=dry_run, label=label),
        ClusterReconciler(session.client("eks", config=RETRY_CONFIG),
                          registry, keys, dry_run=dry_run, label=label),
    ]

    actions = []
    for reconciler in reconcilers:
        actions.extend(reconciler.reconcile())
    return actions
