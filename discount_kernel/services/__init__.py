"""Services for the discount kernel (write side)."""

from discount_kernel.services.approval_service import ApprovalService
from discount_kernel.services.auditor_service import AuditorService, AuditTrace
from discount_kernel.services.redemption_service import RedemptionService
from discount_kernel.services.rule_service import RuleDefinition, RuleService
from discount_kernel.services.sequence_service import SequenceService

__all__ = [
    "ApprovalService",
    "AuditTrace",
    "AuditorService",
    "RedemptionService",
    "RuleDefinition",
    "RuleService",
    "SequenceService",
]
