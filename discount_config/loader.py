"""
Policy loader (``discount_config.loader``).

Responsibility
--------------
Loads the tenant discount policy YAML file and parses it into frozen
``TenantDiscountPolicy`` instances, and serves them through
``PolicyRegistry`` (a ``PolicySource``).

Architecture position
---------------------
**Config layer**.  Depends on ``discount_kernel.domain.policy`` only; the
kernel never imports this package.

File format
-----------
::

    defaults:
      approval_threshold_percentage: "20"
      approval_expiry_hours: 72
    tenants:
      acme:
        approval_threshold_percentage: "15"
        max_discount_percentage: "40"

Values in ``tenants`` override ``defaults`` key by key.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from discount_kernel.domain.allocation import AllocationMethod
from discount_kernel.domain.approval import ExpiryAction
from discount_kernel.domain.policy import TenantDiscountPolicy

_DECIMAL_KEYS = frozenset({
    "approval_threshold_percentage",
    "approval_threshold_amount",
    "max_discount_percentage",
})
_KNOWN_KEYS = frozenset(f.name for f in fields(TenantDiscountPolicy)) - {"tenant_id"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _decimal(key: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a decimal, got {value!r}") from exc


def parse_policy_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Turn raw YAML values into typed TenantDiscountPolicy keyword arguments."""
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown policy keys: {', '.join(sorted(unknown))}")

    parsed: dict[str, Any] = {}
    for key, value in data.items():
        if key in _DECIMAL_KEYS:
            parsed[key] = _decimal(key, value)
        elif key == "approval_expiry_hours":
            parsed[key] = int(value) if value is not None else None
        elif key == "approval_expiry_action":
            parsed[key] = ExpiryAction(str(value).lower())
        elif key == "default_allocation_method":
            parsed[key] = AllocationMethod(str(value).lower())
        elif key == "exclusive_dominates":
            parsed[key] = bool(value)
        elif key == "currency":
            parsed[key] = str(value).upper()
    return parsed


def parse_policy(tenant_id: str, data: dict[str, Any], defaults: dict[str, Any] | None = None) -> TenantDiscountPolicy:
    """
    Build one tenant's policy from its YAML block layered over defaults.

    Raises:
        ValueError: Unknown keys or values outside their allowed range.
    """
    merged = {**parse_policy_fields(defaults or {}), **parse_policy_fields(data or {})}
    return TenantDiscountPolicy(tenant_id=tenant_id, **merged)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    SHA-256 of the canonical JSON form of ``data``.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class PolicyRegistry:
    """PolicySource backed by a parsed policy file."""

    def __init__(
        self,
        policies: dict[str, TenantDiscountPolicy],
        default: TenantDiscountPolicy,
        checksum: str | None = None,
    ):
        self._policies = dict(policies)
        self._default = default
        self.checksum = checksum

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolicyRegistry:
        defaults = data.get("defaults") or {}
        tenants = data.get("tenants") or {}
        policies = {
            str(tenant_id): parse_policy(str(tenant_id), block, defaults)
            for tenant_id, block in tenants.items()
        }
        return cls(
            policies,
            default=parse_policy("*", {}, defaults),
            checksum=compute_checksum(data),
        )

    @property
    def tenant_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._policies))

    def policy_for(self, tenant_id: str) -> TenantDiscountPolicy:
        policy = self._policies.get(tenant_id)
        if policy is not None:
            return policy
        return replace(self._default, tenant_id=tenant_id)


def load_policies(path: Path) -> PolicyRegistry:
    """Load and parse a tenant policy file."""
    return PolicyRegistry.from_dict(load_yaml_file(Path(path)))
