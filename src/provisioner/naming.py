"""Deterministic, collision-resistant resource naming.

Idempotency across runs comes from naming, not from local state: the same
prefix in the same scope always yields the same names, and two scopes never
collide because a short hash of the scope is embedded in every global name.
"""

from __future__ import annotations

import hashlib
import re

from .resources import ResourceKind

# Platform naming limits (max length, allowed character class, case-fold)
NAME_RULES: dict[ResourceKind, tuple[int, str, bool]] = {
    ResourceKind.RESOURCE_GROUP: (90, r"[^a-zA-Z0-9._()-]", False),
    ResourceKind.MANAGED_IDENTITY: (128, r"[^a-zA-Z0-9_-]", False),
    ResourceKind.VNET: (64, r"[^a-zA-Z0-9._-]", False),
    ResourceKind.SUBNET: (80, r"[^a-zA-Z0-9._-]", False),
    ResourceKind.NSG: (80, r"[^a-zA-Z0-9._-]", False),
    ResourceKind.STORAGE_ACCOUNT: (24, r"[^a-z0-9]", True),
    ResourceKind.STORAGE_CONTAINER: (63, r"[^a-z0-9-]", True),
    ResourceKind.KEY_VAULT: (24, r"[^a-zA-Z0-9-]", True),
    ResourceKind.CERTIFICATE: (127, r"[^a-zA-Z0-9-]", False),
    ResourceKind.CLUSTER_DEPLOYMENT: (64, r"[^a-zA-Z0-9._()-]", False),
    ResourceKind.PRIVATE_ENDPOINT: (64, r"[^a-zA-Z0-9._-]", False),
    ResourceKind.DNS_ZONE_LINK: (80, r"[^a-zA-Z0-9._-]", False),
}

DEFAULT_RULE: tuple[int, str, bool] = (64, r"[^a-zA-Z0-9._-]", False)

# Short, stable kind prefixes
KIND_PREFIXES: dict[ResourceKind, str] = {
    ResourceKind.RESOURCE_GROUP: "rg",
    ResourceKind.MANAGED_IDENTITY: "id",
    ResourceKind.VNET: "vnet",
    ResourceKind.NSG: "nsg",
    ResourceKind.STORAGE_ACCOUNT: "st",
    ResourceKind.KEY_VAULT: "kv",
    ResourceKind.CERTIFICATE: "cert",
    ResourceKind.CLUSTER_DEPLOYMENT: "cluster",
    ResourceKind.PRIVATE_ENDPOINT: "pe",
}

SCOPE_HASH_LENGTH = 6
MIN_GLOBAL_NAME_LENGTH = 3

# Kinds whose names may not contain consecutive hyphens
SINGLE_HYPHEN_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.KEY_VAULT, ResourceKind.STORAGE_CONTAINER}
)

# Kinds whose names must be unique across the platform, not just the group
GLOBALLY_UNIQUE_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.STORAGE_ACCOUNT, ResourceKind.KEY_VAULT}
)


def scope_hash(*scope_parts: str, length: int = SCOPE_HASH_LENGTH) -> str:
    """Short lowercase hex digest of the enclosing scope."""
    joined = "/".join(part.lower() for part in scope_parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:length]


def sanitize(kind: ResourceKind, raw: str) -> str:
    """Apply the platform character set, case rule and length limit."""
    max_length, invalid, lowercase = NAME_RULES.get(kind, DEFAULT_RULE)
    name = raw.lower() if lowercase else raw
    name = re.sub(invalid, "", name)
    if kind in SINGLE_HYPHEN_KINDS:
        name = re.sub(r"-{2,}", "-", name)
    return name[:max_length].rstrip("-.")


def resource_name(kind: ResourceKind, prefix: str, *scope_parts: str) -> str:
    """Derive the name for a resource of ``kind`` owned by ``prefix``.

    Globally unique kinds embed the scope hash; the prefix is truncated first
    so the hash always survives the length limit. For a storage account with
    prefix "hpc-demo" the result looks like "sthpcdemo" followed by six hex
    characters of the scope hash.
    """
    kind_prefix = KIND_PREFIXES.get(kind, kind.value.lower())
    max_length, _, _ = NAME_RULES.get(kind, DEFAULT_RULE)

    if kind in GLOBALLY_UNIQUE_KINDS:
        digest = scope_hash(*scope_parts) if scope_parts else scope_hash(prefix)
        stem = sanitize(kind, f"{kind_prefix}{prefix}")
        stem = stem[: max_length - len(digest)]
        name = sanitize(kind, f"{stem}{digest}")
        if len(name) < MIN_GLOBAL_NAME_LENGTH:
            name = sanitize(kind, f"{kind_prefix}{digest}")
        return name

    return sanitize(kind, f"{kind_prefix}-{prefix}")


def resource_group_name(prefix: str) -> str:
    """Default resource group for a prefix."""
    return resource_name(ResourceKind.RESOURCE_GROUP, prefix)
