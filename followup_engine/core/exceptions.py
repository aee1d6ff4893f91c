"""
Custom exception classes for the follow-up orchestration engine.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid


class FollowUpError(Exception):
    """Base exception for follow-up engine errors."""

    def __init__(
        self,
        detail: str,
        error_code: Optional[str] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.detail = detail
        self.error_code = error_code
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context or {}
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for result payloads."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.detail,
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


class ValidationError(FollowUpError):
    """Exception for malformed sequences and steps."""

    def __init__(
        self,
        detail: str,
        field: Optional[str] = None,
        violations: Optional[List[str]] = None,
        **context
    ):
        error_code = "FUE_001"
        if field:
            error_code = f"FUE_001_{field.upper()}"
            detail = f"Validation failed for field '{field}': {detail}"

        self.field = field
        self.violations = violations or []
        context_dict = {"field": field, "violations": self.violations, **context}

        super().__init__(detail=detail, error_code=error_code, context=context_dict)


# Consolidation Exceptions
class ConsolidationError(FollowUpError):
    """Exception for consolidation rule violations."""

    def __init__(
        self,
        detail: str,
        rule_name: Optional[str] = None,
        customer_id: Optional[str] = None,
        **context
    ):
        error_code = "FUE_002"
        if rule_name:
            error_code = f"FUE_002_{rule_name.upper()}"

        self.rule_name = rule_name
        self.customer_id = customer_id
        context_dict = {"rule_name": rule_name, "customer_id": customer_id, **context}

        super().__init__(detail=detail, error_code=error_code, context=context_dict)


class ContactIntervalError(ConsolidationError):
    """Contact attempted before the customer's next eligible contact date."""

    def __init__(self, customer_id: str, next_eligible_contact: Optional[datetime]):
        self.next_eligible_contact = next_eligible_contact
        when = next_eligible_contact.isoformat() if next_eligible_contact else "unknown"
        super().__init__(
            detail=f"Customer {customer_id} cannot be contacted until {when}",
            rule_name="contact_interval",
            customer_id=customer_id,
            next_eligible_contact=when,
        )


class InsufficientInvoicesError(ConsolidationError):
    """Fewer invoices than the consolidation minimum."""

    def __init__(self, customer_id: str, invoice_count: int, minimum: int):
        self.invoice_count = invoice_count
        self.minimum = minimum
        super().__init__(
            detail=(
                f"Customer {customer_id} has {invoice_count} overdue invoices, "
                f"at least {minimum} are required for consolidation"
            ),
            rule_name="insufficient_invoices",
            customer_id=customer_id,
            invoice_count=invoice_count,
            minimum=minimum,
        )


class TooManyInvoicesError(ConsolidationError):
    """More invoices than a single consolidated reminder may carry."""

    def __init__(self, customer_id: str, invoice_count: int, maximum: int):
        self.invoice_count = invoice_count
        self.maximum = maximum
        super().__init__(
            detail=f"Too many invoices for consolidation: {invoice_count} (maximum {maximum})",
            rule_name="too_many_invoices",
            customer_id=customer_id,
            invoice_count=invoice_count,
            maximum=maximum,
        )


class ConsolidationPreferenceError(ConsolidationError):
    """Customer opted out of consolidated reminders."""

    def __init__(self, customer_id: str, preference: str):
        self.preference = preference
        super().__init__(
            detail=f"Customer {customer_id} has consolidation preference {preference}",
            rule_name="consolidation_preference",
            customer_id=customer_id,
            preference=preference,
        )


class ConsolidationAmountLimitError(ConsolidationError):
    """Consolidated total exceeds the customer's cap."""

    def __init__(self, customer_id: str, total_amount: Any, limit: Any):
        self.total_amount = total_amount
        self.limit = limit
        super().__init__(
            detail=f"Total amount exceeds customer limit: {total_amount} > {limit}",
            rule_name="amount_limit_exceeded",
            customer_id=customer_id,
            total_amount=str(total_amount),
            limit=str(limit),
        )


class TemplateNotFoundError(ConsolidationError):
    """No active consolidation template for the requested tier."""

    def __init__(self, template_type: str, customer_id: Optional[str] = None):
        self.template_type = template_type
        super().__init__(
            detail=f"No consolidation template found for {template_type}",
            rule_name="template_not_found",
            customer_id=customer_id,
            template_type=template_type,
        )


# Scheduling Exceptions
class SchedulingError(FollowUpError):
    """No valid send slot found within the bounded search."""

    def __init__(self, detail: str, base_time: Optional[datetime] = None, day_advances: int = 0):
        self.base_time = base_time
        self.day_advances = day_advances
        super().__init__(
            detail=detail,
            error_code="FUE_003",
            context={
                "base_time": base_time.isoformat() if base_time else None,
                "day_advances": day_advances,
            },
        )


# Escalation Exceptions
class EscalationActionError(FollowUpError):
    """Exception for escalation actions that could not be executed."""

    def __init__(
        self,
        detail: str,
        action_type: Optional[str] = None,
        follow_up_id: Optional[str] = None,
        **context
    ):
        self.action_type = action_type
        self.follow_up_id = follow_up_id
        error_code = "FUE_004"
        if action_type:
            error_code = f"FUE_004_{action_type.upper()}"

        context_dict = {"action_type": action_type, "follow_up_id": follow_up_id, **context}

        super().__init__(detail=detail, error_code=error_code, context=context_dict)


def get_user_friendly_error_message(error_code: str) -> str:
    """Get user-friendly error message for error code."""
    error_messages = {
        "FUE_001": "The sequence is not valid. Please check its steps.",
        "FUE_002": "The customer is not eligible for a consolidated reminder.",
        "FUE_003": "No valid send time could be found. Please try again later.",
        "FUE_004": "The escalation action could not be completed.",
    }
    base_code = "_".join(error_code.split("_")[:2]) if error_code else ""
    return error_messages.get(base_code, "An error occurred. Please try again.")
