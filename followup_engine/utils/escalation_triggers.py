"""
Escalation rule matching.

Scope checks and trigger evaluation for escalation rules. Evaluation is pure:
it reads a FollowUpContext and a point in time and never touches persistence.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from followup_engine.models.escalation import (
    BounceTrigger,
    ComplaintTrigger,
    EscalationRule,
    ManualTrigger,
    NoPaymentTrigger,
    NoResponseTrigger,
    PartialPaymentTrigger,
    RuleScope,
)
from followup_engine.models.follow_up import (
    RESPONSE_ACTIVITY_TYPES,
    ActivityType,
    DeliveryStatus,
    FollowUpContext,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    """Outcome of a trigger check."""
    matched: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"matched": self.matched, "reason": self.reason}


NO_MATCH = TriggerResult(matched=False)


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


def is_in_scope(scope: RuleScope, context: FollowUpContext, now: datetime) -> bool:
    """Check a rule's scope conditions against an instance."""
    amount = context.invoice.total_amount
    if scope.min_amount is not None and amount < scope.min_amount:
        return False
    if scope.max_amount is not None and amount > scope.max_amount:
        return False

    if scope.customer_segments:
        if context.customer.segment not in scope.customer_segments:
            return False

    if scope.days_since_last_contact is not None and context.last_customer_contact is not None:
        if (now - context.last_customer_contact).days < scope.days_since_last_contact:
            return False

    return True


def _no_response(trigger: NoResponseTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    sent_at = context.follow_up.sent_at
    if sent_at is None or now < sent_at + timedelta(hours=trigger.timeframe_hours):
        return NO_MATCH

    responded = any(
        activity.occurred_at >= sent_at
        for activity in context.activities_of(*RESPONSE_ACTIVITY_TYPES)
    )
    if responded:
        return NO_MATCH
    if context.last_customer_contact is not None and context.last_customer_contact >= sent_at:
        return NO_MATCH

    return TriggerResult(True, f"No response for {_format_hours(trigger.timeframe_hours)} hours")


def _no_payment(trigger: NoPaymentTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    sent_at = context.follow_up.sent_at
    if sent_at is None or now < sent_at + timedelta(hours=trigger.timeframe_hours):
        return NO_MATCH

    if any(payment.payment_date > sent_at for payment in context.invoice.payments):
        return NO_MATCH

    return TriggerResult(
        True,
        f"No payment received for {_format_hours(trigger.timeframe_hours)} hours after follow-up",
    )


def _partial_payment(trigger: PartialPaymentTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    total = context.invoice.total_amount
    if total <= 0:
        return NO_MATCH

    paid_ratio = context.invoice.total_paid / total
    # A ratio of zero belongs to NO_PAYMENT
    if not Decimal("0") < paid_ratio < Decimal(str(trigger.threshold)):
        return NO_MATCH

    percentage = (paid_ratio * 100).quantize(Decimal("1"))
    return TriggerResult(True, f"Partial payment received ({percentage}% of total)")


def _bounce(trigger: BounceTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    if any(record.status == DeliveryStatus.BOUNCED for record in context.delivery_records):
        return TriggerResult(True, "Email bounced")
    return NO_MATCH


def _complaint(trigger: ComplaintTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    sent_at = context.follow_up.sent_at
    if sent_at is None:
        return NO_MATCH

    window_end = sent_at + timedelta(days=trigger.window_days)
    complaints = context.activities_of(ActivityType.CUSTOMER_COMPLAINT)
    if any(sent_at <= complaint.occurred_at <= window_end for complaint in complaints):
        return TriggerResult(True, "Customer complaint received")
    return NO_MATCH


def _manual(trigger: ManualTrigger, context: FollowUpContext, now: datetime) -> TriggerResult:
    sent_at = context.follow_up.sent_at
    if sent_at is None:
        return NO_MATCH

    flags = context.activities_of(ActivityType.MANUAL_ESCALATION)
    if any(flag.occurred_at >= sent_at for flag in flags):
        return TriggerResult(True, "Manual escalation flag set")
    return NO_MATCH


TRIGGER_EVALUATORS: Dict[type, Callable[[Any, FollowUpContext, datetime], TriggerResult]] = {
    NoResponseTrigger: _no_response,
    NoPaymentTrigger: _no_payment,
    PartialPaymentTrigger: _partial_payment,
    BounceTrigger: _bounce,
    ComplaintTrigger: _complaint,
    ManualTrigger: _manual,
}


def evaluate_trigger(trigger: Any, context: FollowUpContext, now: datetime) -> TriggerResult:
    """
    Evaluate one trigger against an instance.

    Unrecognised trigger types never match.
    """
    evaluator = TRIGGER_EVALUATORS.get(type(trigger))
    if evaluator is None:
        logger.warning("Unrecognised escalation trigger", trigger_type=type(trigger).__name__)
        return NO_MATCH
    return evaluator(trigger, context, now)


def evaluate_rule(rule: EscalationRule, context: FollowUpContext, now: datetime) -> TriggerResult:
    """Scope check followed by trigger check for one rule."""
    if not rule.active:
        return NO_MATCH
    if not is_in_scope(rule.scope, context, now):
        return NO_MATCH
    return evaluate_trigger(rule.trigger, context, now)


def sort_rules(rules: Iterable[EscalationRule]) -> List[EscalationRule]:
    """Active rules in evaluation order: ascending priority, then id."""
    return sorted((rule for rule in rules if rule.active), key=lambda rule: (rule.priority, rule.id))


def find_matching_rule(
    rules: Iterable[EscalationRule],
    context: FollowUpContext,
    now: datetime,
) -> Optional[Tuple[EscalationRule, TriggerResult]]:
    """
    Find the first matching rule for an instance.

    Returns:
        Tuple of (rule, TriggerResult) for the lowest-priority-number match,
        or None when no rule matches
    """
    for rule in sort_rules(rules):
        result = evaluate_rule(rule, context, now)
        if result.matched:
            return rule, result
    return None


def load_escalation_rules(raw_rules: Iterable[Mapping[str, Any]]) -> List[EscalationRule]:
    """
    Parse configured rule definitions.

    Definitions with an unknown trigger condition or action type, or with
    invalid parameters, are dropped with a warning.
    """
    rules: List[EscalationRule] = []
    for raw in raw_rules:
        try:
            rules.append(EscalationRule.model_validate(raw))
        except PydanticValidationError as e:
            logger.warning(
                "Ignoring invalid escalation rule",
                rule_id=raw.get("id"),
                error_count=e.error_count(),
                errors=[error["msg"] for error in e.errors()],
            )
    return rules


def merge_rules(
    defaults: Iterable[EscalationRule],
    overrides: Iterable[EscalationRule],
) -> List[EscalationRule]:
    """Defaults with overrides applied by rule id."""
    merged = {rule.id: rule for rule in defaults}
    for rule in overrides:
        merged[rule.id] = rule
    return list(merged.values())
