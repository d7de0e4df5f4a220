"""
Tests for the tenant policy loader.

Covers:
- PolicyRegistry.from_dict(): defaults layered under tenant blocks
- Rejection of unknown keys and out-of-range values
- Checksum stability
- get_policy_source(): bundled default file, explicit path, config trace log
- build_pricing_orchestrator(): policies wired from a policy file
"""

from decimal import Decimal

import pytest
import yaml

from discount_config import DEFAULT_POLICY_FILE, Settings, get_policy_source
from discount_config.loader import PolicyRegistry, compute_checksum, load_policies
from discount_kernel.domain.allocation import AllocationMethod
from discount_kernel.domain.approval import ExpiryAction
from discount_services.pricing_orchestrator import build_pricing_orchestrator

POLICY_DATA = {
    "defaults": {
        "approval_threshold_percentage": "20",
        "approval_expiry_hours": 48,
    },
    "tenants": {
        "acme": {
            "approval_threshold_percentage": "15",
            "max_discount_percentage": "40",
            "approval_expiry_action": "REJECT",
            "default_allocation_method": "equal",
        },
        "globex": {"currency": "eur"},
    },
}


class TestPolicyRegistry:

    def test_tenant_overrides_defaults(self):
        registry = PolicyRegistry.from_dict(POLICY_DATA)
        acme = registry.policy_for("acme")
        assert acme.tenant_id == "acme"
        assert acme.approval_threshold_percentage == Decimal("15")
        assert acme.max_discount_percentage == Decimal("40")
        assert acme.approval_expiry_hours == 48
        assert acme.approval_expiry_action == ExpiryAction.REJECT
        assert acme.default_allocation_method == AllocationMethod.EQUAL

    def test_currency_normalised(self):
        assert PolicyRegistry.from_dict(POLICY_DATA).policy_for("globex").currency == "EUR"

    def test_unknown_tenant_gets_defaults(self):
        policy = PolicyRegistry.from_dict(POLICY_DATA).policy_for("initech")
        assert policy.tenant_id == "initech"
        assert policy.approval_threshold_percentage == Decimal("20")
        assert policy.approval_expiry_hours == 48

    def test_tenant_ids_sorted(self):
        assert PolicyRegistry.from_dict(POLICY_DATA).tenant_ids == ("acme", "globex")

    def test_empty_file(self):
        registry = PolicyRegistry.from_dict({})
        assert registry.tenant_ids == ()
        assert registry.policy_for("t").approval_threshold_percentage == Decimal("20")

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown policy keys: threshold"):
            PolicyRegistry.from_dict({"tenants": {"acme": {"threshold": "10"}}})

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            PolicyRegistry.from_dict({"tenants": {"acme": {"max_discount_percentage": "120"}}})

    def test_non_decimal_rejected(self):
        with pytest.raises(ValueError, match="must be a decimal"):
            PolicyRegistry.from_dict({"defaults": {"approval_threshold_amount": "lots"}})


class TestChecksum:

    def test_stable_for_equal_data(self):
        reordered = {"tenants": POLICY_DATA["tenants"], "defaults": POLICY_DATA["defaults"]}
        assert compute_checksum(POLICY_DATA) == compute_checksum(reordered)

    def test_changes_with_data(self):
        changed = {**POLICY_DATA, "defaults": {"approval_threshold_percentage": "25"}}
        assert compute_checksum(POLICY_DATA) != compute_checksum(changed)

    def test_registry_carries_checksum(self):
        assert PolicyRegistry.from_dict(POLICY_DATA).checksum == compute_checksum(POLICY_DATA)


class TestLoading:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump(POLICY_DATA))
        registry = load_policies(path)
        assert registry.policy_for("acme").approval_threshold_percentage == Decimal("15")
        assert registry.checksum == compute_checksum(POLICY_DATA)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policies(tmp_path / "absent.yaml")

    def test_bundled_default(self):
        registry = get_policy_source(settings=Settings())
        assert "demo" in registry.tenant_ids
        demo = registry.policy_for("demo")
        assert demo.approval_threshold_percentage == Decimal("15")
        assert demo.approval_threshold_amount == Decimal("500.00")
        assert demo.approval_expiry_hours == 72

    def test_settings_policy_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump(POLICY_DATA))
        registry = get_policy_source(settings=Settings(policy_file=path))
        assert registry.tenant_ids == ("acme", "globex")

    def test_load_emits_config_trace(self, captured_logs):
        registry = get_policy_source(DEFAULT_POLICY_FILE)
        [trace] = [r for r in captured_logs() if r["message"] == "DISCOUNT_CONFIG_TRACE"]
        assert trace["checksum"] == registry.checksum
        assert trace["tenant_count"] == len(registry.tenant_ids)
        assert trace["policy_file"].endswith("default.yaml")


class TestBuildFromConfig:

    def test_orchestrator_uses_file_policies(self, session, deterministic_clock, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump(POLICY_DATA))
        orchestrator = build_pricing_orchestrator(session, policy_file=path, clock=deterministic_clock)
        assert orchestrator.policy_for("acme").max_discount_percentage == Decimal("40")
        assert orchestrator.clock is deterministic_clock
