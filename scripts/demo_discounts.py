#!/usr/bin/env python3
"""
End-to-end discount scenarios using the REAL architecture.

Loads tenant policies from YAML, creates the schema, seeds a handful of
rules for the ``demo`` tenant and drives them through DiscountOperations:

  1. preview           volume tier + promo code, no side effects
  2. calculate         over the tenant threshold -> approval_required (202)
  3. approve           manager approves the pending request
  4. calculate         re-submitted with the approval id -> committed
  5. void              allocation voided, active total drops to zero

Usage:
    python3 scripts/demo_discounts.py
    python3 scripts/demo_discounts.py --db-url sqlite:///demo.db --json
    DISCOUNT_POLICY_FILE=my_policies.yaml python3 scripts/demo_discounts.py
"""

import argparse
import json
import sys
from decimal import Decimal
from pathlib import Path
from uuid import UUID

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

TENANT = "demo"
CLERK = UUID("00000000-0000-0000-0000-0000000000c1")
MANAGER = UUID("00000000-0000-0000-0000-0000000000a1")

ORDER = {
    "customer_id": "cust-42",
    "promo_code": "spring10",
    "transaction_ref": "INV-DEMO-1",
    "items": [
        {"line_id": "1", "amount": "150.00", "quantity": 10, "category_id": "tools"},
        {"line_id": "2", "amount": "100.00", "quantity": 10, "category_id": "tools"},
        {"line_id": "3", "amount": "50.00", "quantity": 5, "category_id": "paint"},
    ],
}


def _seed(orchestrator) -> None:
    from discount_kernel.domain.discounts import DiscountKind
    from discount_kernel.services.rule_service import RuleDefinition

    rules = orchestrator.rule_service
    rules.create_promotion(
        TENANT,
        "SPRING10",
        RuleDefinition(label="Spring sale", kind=DiscountKind.PERCENTAGE, value=Decimal("10"), max_uses=100),
        CLERK,
    )
    rules.create_volume_tier(
        TENANT,
        "Bulk 20+",
        RuleDefinition(label="Bulk 20+", kind=DiscountKind.PERCENTAGE, value=Decimal("5")),
        CLERK,
        min_quantity=Decimal("20"),
    )


def _show(title: str, result, as_json: bool) -> None:
    print(f"\n== {title} [{result.status}]")
    if as_json:
        print(json.dumps(result.body, indent=2))
        return
    body = result.body
    if "error" in body:
        print(f"  error: {body['error']['code']} - {body['error']['message']}")
        return
    for key in ("status", "total_discount", "final_amount", "discount_percentage", "approval_id"):
        if body.get(key) is not None:
            print(f"  {key}: {body[key]}")
    for offer in body.get("applied_offers", []):
        print(f"  offer: {offer['label']:<16} {offer['amount']:>8}  ({offer['description']})")
    allocation = body.get("allocation") or (body if "allocation_number" in body else None)
    if allocation:
        print(f"  allocation {allocation['allocation_number']} ({allocation['status']})")
        for line in allocation["lines"]:
            print(f"    line {line['line_ref']:<3} {line['allocated_amount']:>8}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the discount engine demo scenarios")
    parser.add_argument("--db-url", help="Database URL (default: DISCOUNT_DATABASE_URL or sqlite)")
    parser.add_argument("--policy-file", type=Path, help="Tenant policy YAML file")
    parser.add_argument("--json", action="store_true", help="Print raw JSON payloads")
    parser.add_argument("--verbose", action="store_true", help="Show structured logs")
    args = parser.parse_args()

    from dataclasses import replace

    from discount_config import Settings, init_from_settings
    from discount_kernel.db.engine import create_tables, drop_tables, session_scope
    from discount_services.operations import DiscountOperations
    from discount_services.pricing_orchestrator import build_pricing_orchestrator

    settings = Settings.from_env()
    if args.db_url:
        settings = replace(settings, database_url=args.db_url)
    if not args.verbose:
        settings = replace(settings, log_level="WARNING")

    init_from_settings(settings)
    drop_tables()
    create_tables()

    with session_scope() as session:
        orchestrator = build_pricing_orchestrator(session, settings=settings, policy_file=args.policy_file)
        ops = DiscountOperations(orchestrator)
        _seed(orchestrator)

        _show("preview", ops.preview(TENANT, ORDER), args.json)

        pending = ops.calculate(TENANT, ORDER, CLERK)
        _show("calculate", pending, args.json)
        approval_id = pending.body.get("approval_id")
        if approval_id is None:
            return 0

        _show("approve", ops.approve(TENANT, approval_id, MANAGER, {"notes": "spring campaign"}), args.json)

        committed = ops.calculate(TENANT, {**ORDER, "approval_id": approval_id}, CLERK)
        _show("calculate (approved)", committed, args.json)

        allocation = committed.body.get("allocation")
        if allocation:
            voided = ops.void_allocation(
                TENANT, allocation["allocation_id"], MANAGER, {"reason": "order cancelled"},
            )
            _show("void", voided, args.json)
            total = orchestrator.allocation_service.active_discount_total(TENANT, ORDER["transaction_ref"])
            print(f"\nactive discount total for {ORDER['transaction_ref']}: {total}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
