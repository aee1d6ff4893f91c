"""
Models package for the follow-up orchestration engine.
"""
from .audit import AuditActorType, AuditEntry, AuditEventType
from .consolidation import (
    ConsolidatedInvoice,
    ConsolidatedReminder,
    ConsolidationCandidate,
    ConsolidationPreference,
    CustomerProfile,
    EscalationLevel,
    OverdueInvoiceRecord,
    TemplateType,
)
from .escalation import (
    DEFAULT_ESCALATION_RULES,
    ActionType,
    EscalationRule,
    RuleScope,
    TriggerCondition,
)
from .follow_up import (
    ActivityRecord,
    ActivityType,
    CustomerSummary,
    DeliveryRecord,
    DeliveryStatus,
    FollowUpContext,
    FollowUpInstance,
    InvoiceSummary,
    Payment,
)
from .sequence import CulturalTone, DelayUnit, FollowUpSequence, Step, StepType

__all__ = [
    "AuditActorType",
    "AuditEntry",
    "AuditEventType",
    "ConsolidatedInvoice",
    "ConsolidatedReminder",
    "ConsolidationCandidate",
    "ConsolidationPreference",
    "CustomerProfile",
    "EscalationLevel",
    "OverdueInvoiceRecord",
    "TemplateType",
    "DEFAULT_ESCALATION_RULES",
    "ActionType",
    "EscalationRule",
    "RuleScope",
    "TriggerCondition",
    "ActivityRecord",
    "ActivityType",
    "CustomerSummary",
    "DeliveryRecord",
    "DeliveryStatus",
    "FollowUpContext",
    "FollowUpInstance",
    "InvoiceSummary",
    "Payment",
    "CulturalTone",
    "DelayUnit",
    "FollowUpSequence",
    "Step",
    "StepType",
]
