"""
Customer priority scoring for consolidated reminders.

Weighted blend of outstanding amount, invoice age, payment history and
relationship strength, scaled to 0-100.
"""

from decimal import Decimal
from typing import Optional, Union

from followup_engine.core.config import Settings, get_settings
from followup_engine.models.consolidation import EscalationLevel

Number = Union[int, float, Decimal]

# (minimum days overdue, minimum total amount, level), checked top down
ESCALATION_THRESHOLDS = (
    (90, Decimal("50000"), EscalationLevel.FINAL),
    (60, Decimal("25000"), EscalationLevel.URGENT),
    (30, Decimal("10000"), EscalationLevel.FIRM),
)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def calculate_priority_score(
    total_amount: Number,
    oldest_invoice_days: int,
    payment_history_score: Optional[float] = None,
    relationship_score: Optional[float] = None,
    settings: Optional[Settings] = None,
) -> int:
    """
    Calculate a 0-100 priority score for a consolidation candidate.

    Args:
        total_amount: Sum of overdue invoice amounts
        oldest_invoice_days: Days overdue of the oldest invoice
        payment_history_score: 0-1, higher means a worse payment record.
            Defaults to the configured neutral score.
        relationship_score: 0-1, defaults to the configured neutral score
        settings: Settings override

    Returns:
        Rounded score clamped to [0, 100]
    """
    settings = settings or get_settings()
    if payment_history_score is None:
        payment_history_score = settings.default_payment_history_score
    if relationship_score is None:
        relationship_score = settings.default_relationship_score

    amount_factor = clamp01(float(total_amount) / settings.priority_amount_reference)
    age_factor = clamp01(oldest_invoice_days / settings.priority_age_reference_days)

    score = (
        settings.priority_weight_amount * amount_factor
        + settings.priority_weight_age * age_factor
        + settings.priority_weight_payment_history * clamp01(payment_history_score)
        + settings.priority_weight_relationship * clamp01(relationship_score)
    )
    return max(0, min(100, round(score * 100)))


def determine_escalation_level(oldest_invoice_days: int, total_amount: Number) -> EscalationLevel:
    """Escalation tier from invoice age or total amount, whichever is harsher."""
    amount = Decimal(str(total_amount))
    for min_days, min_amount, level in ESCALATION_THRESHOLDS:
        if oldest_invoice_days >= min_days or amount >= min_amount:
            return level
    return EscalationLevel.POLITE


def get_priority_level(priority_score: int) -> str:
    """Bucket a score into high, medium or low."""
    if priority_score >= 70:
        return "high"
    if priority_score >= 40:
        return "medium"
    return "low"
