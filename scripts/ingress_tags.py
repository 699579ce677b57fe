#!/usr/bin/env python3
"""
Ingress CIDR Controller - Tag Parsing and Rule Diffing

Pure functions that turn resource tags into desired ingress state, turn
provider rule descriptions into current ingress state, and compute the
additive difference between the two. Nothing in this module talks to AWS.

Tag grammar:
    <ingress-key>/sources   office:vpn            group names joined by ':'
    <ingress-key>/ports     443:8080/udp          port[/protocol] joined by ':'
"""

import ipaddress
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple


DEFAULT_INGRESS_KEY = "ingress.controlant.com"
DEFAULT_PROTOCOL = "tcp"
TAG_SEPARATOR = ":"

# Optional sign and ASCII digits only
PORT_PATTERN = re.compile(r"[+-]?[0-9]+")

# Rules without FromPort (e.g. protocol -1) cover every port
ALL_PORTS = None

Triple = Tuple[str, Optional[int], str]
PortSpec = Tuple[int, str]


class ConfigError(ValueError):
    """Invalid operator-supplied configuration."""


class TagParseError(ValueError):
    """A resource tag value does not follow the tag grammar."""


class ProviderDataError(RuntimeError):
    """A provider description is missing a field the controller relies on."""


# ---------------------------------------------------------------------------
# Tag keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IngressTagKeys:
    """The two tag keys a resource must carry to be managed."""
    sources: str
    ports: str

    @classmethod
    def from_ingress_key(cls, ingress_key: str = DEFAULT_INGRESS_KEY) -> "IngressTagKeys":
        return cls(sources=f"{ingress_key}/sources", ports=f"{ingress_key}/ports")


# ---------------------------------------------------------------------------
# CIDR Registry
# ---------------------------------------------------------------------------

def parse_network(value: str) -> str:
    """Validate a CIDR prefix and return its canonical string form."""
    if "/" not in value:
        raise ConfigError(f"invalid CIDR '{value}': missing prefix length")
    try:
        return str(ipaddress.ip_network(value.strip(), strict=True))
    except ValueError as e:
        raise ConfigError(f"invalid CIDR '{value}': {e}")


def parse_cidr_mapping(directive: str) -> Tuple[str, str]:
    """Parse a ``name=prefix`` directive."""
    name, sep, value = directive.partition("=")
    if not sep:
        raise ConfigError(f"no name found for cidr mapping '{directive}'")
    if TAG_SEPARATOR in name:
        raise ConfigError(f"colon (:) not allowed in cidr name '{name}'")
    if not name:
        raise ConfigError(f"empty cidr name in '{directive}'")
    return name, parse_network(value)


class CidrRegistry:
    """Immutable mapping of group name to network prefixes."""

    def __init__(self, groups: Mapping[str, Iterable[str]]):
        self._groups: Dict[str, Tuple[str, ...]] = {
            name: tuple(prefixes) for name, prefixes in groups.items()
        }

    @classmethod
    def from_mappings(cls, mappings: Iterable[Tuple[str, str]]) -> "CidrRegistry":
        """Build a registry from ``(name, prefix)`` pairs; same names accumulate."""
        groups: Dict[str, List[str]] = {}
        for name, prefix in mappings:
            entries = groups.setdefault(name, [])
            if prefix not in entries:
                entries.append(prefix)
        return cls(groups)

    def get(self, name: str) -> Tuple[str, ...]:
        return self._groups.get(name, ())

    def resolve(self, names: Iterable[str]) -> List[str]:
        """Flatten group names into prefixes, in order. Unknown names contribute nothing."""
        prefixes = []
        for name in names:
            prefixes.extend(self.get(name))
        return prefixes

    def names(self) -> List[str]:
        return sorted(self._groups)

    def __contains__(self, name: str) -> bool:
        return name in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        return f"CidrRegistry({self._groups!r})"


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

def parse_sources(value: str) -> List[str]:
    return value.split(TAG_SEPARATOR)


def parse_ports(value: str) -> List[PortSpec]:
    """Parse a ports tag value into ``(port, protocol)`` pairs.

    ``"443/udp:80"`` -> ``[(443, "udp"), (80, "tcp")]``. The protocol is not
    validated; only the port must be an integer.
    """
    specs = []
    for token in value.split(TAG_SEPARATOR):
        port, sep, protocol = token.partition("/")
        if not PORT_PATTERN.fullmatch(port):
            raise TagParseError(f"invalid port '{port}' in ports tag '{value}'")
        port_number = int(port)
        specs.append((port_number, protocol if sep else DEFAULT_PROTOCOL))
    return specs


def tag_map(tags: Optional[Iterable[Mapping[str, str]]]) -> Dict[str, str]:
    """Convert EC2 style ``[{'Key': k, 'Value': v}]`` tags into a dict."""
    return {tag["Key"]: tag.get("Value", "") for tag in tags or [] if "Key" in tag}


def has_ingress_tags(tags: Mapping[str, str], keys: IngressTagKeys) -> bool:
    return keys.sources in tags and keys.ports in tags


def desired_rules(tags: Mapping[str, str], keys: IngressTagKeys,
                  registry: CidrRegistry) -> Optional[List[Triple]]:
    """Compute the triples a resource asks for, or ``None`` when it is not tagged.

    Exact duplicate triples collapse into one; the same port with two
    protocols produces two rules. First-occurrence order is kept.
    """
    if not has_ingress_tags(tags, keys):
        return None

    prefixes = registry.resolve(parse_sources(tags[keys.sources]))
    ports = parse_ports(tags[keys.ports])

    rules: "OrderedDict[Triple, None]" = OrderedDict()
    for port, protocol in ports:
        for prefix in prefixes:
            rules[(prefix, port, protocol)] = None
    return list(rules)


# ---------------------------------------------------------------------------
# Current state
# ---------------------------------------------------------------------------

def current_rules(permissions: Optional[Iterable[Mapping]]) -> Set[Triple]:
    """Flatten EC2 ``IpPermissions`` into a set of triples."""
    rules: Set[Triple] = set()
    for perm in permissions or []:
        protocol = perm.get("IpProtocol")
        if protocol is None:
            raise ProviderDataError(f"permission without IpProtocol: {perm}")
        port = perm.get("FromPort", ALL_PORTS)

        for ip_range in perm.get("IpRanges") or []:
            if "CidrIp" not in ip_range:
                raise ProviderDataError(f"IpRanges entry without CidrIp: {ip_range}")
            rules.add((ip_range["CidrIp"], port, protocol))

        for ip_range in perm.get("Ipv6Ranges") or []:
            if "CidrIpv6" not in ip_range:
                raise ProviderDataError(f"Ipv6Ranges entry without CidrIpv6: {ip_range}")
            rules.add((ip_range["CidrIpv6"], port, protocol))
    return rules


# ---------------------------------------------------------------------------
# Diff & merge
# ---------------------------------------------------------------------------

def missing_rules(desired: Iterable[Triple], current: Iterable[Triple]) -> List[Triple]:
    """Triples in ``desired`` that ``current`` does not grant. Never removals."""
    granted = set(current)
    return [rule for rule in desired if rule not in granted]


def group_by_port(rules: Iterable[Triple]) -> "OrderedDict[PortSpec, List[str]]":
    """Group triples by ``(port, protocol)`` so each group is one authorize call."""
    groups: "OrderedDict[PortSpec, List[str]]" = OrderedDict()
    for prefix, port, protocol in rules:
        groups.setdefault((port, protocol), []).append(prefix)
    return groups


def merge_public_access_cidrs(current: Iterable[str],
                              additions: Iterable[str]) -> Tuple[List[str], bool]:
    """Merge prefixes into a flat list. Returns ``(merged, changed)``."""
    current = list(current)
    before = sorted(set(current))
    merged = sorted(set(current) | set(additions))
    return merged, merged != before
