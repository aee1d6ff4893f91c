"""
Follow-up instance models and the read model used during escalation passes.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field


class DeliveryStatus(str, Enum):
    """Lifecycle states of a scheduled follow-up step."""
    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    HELD = "HELD"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


ACTIVE_DELIVERY_STATUSES = (DeliveryStatus.QUEUED, DeliveryStatus.SENT, DeliveryStatus.DELIVERED)


class ActivityType(str, Enum):
    """Engagement and customer activity recorded against a follow-up."""
    EMAIL_OPENED = "EMAIL_OPENED"
    EMAIL_CLICKED = "EMAIL_CLICKED"
    CUSTOMER_RESPONSE = "CUSTOMER_RESPONSE"
    PHONE_CALL = "PHONE_CALL"
    EMAIL_REPLY = "EMAIL_REPLY"
    CUSTOMER_COMPLAINT = "CUSTOMER_COMPLAINT"
    MANUAL_ESCALATION = "MANUAL_ESCALATION"


RESPONSE_ACTIVITY_TYPES = (
    ActivityType.EMAIL_OPENED,
    ActivityType.EMAIL_CLICKED,
    ActivityType.CUSTOMER_RESPONSE,
    ActivityType.PHONE_CALL,
    ActivityType.EMAIL_REPLY,
)


class FollowUpInstance(BaseModel):
    """One sequence step in execution against one invoice."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invoice_id: str
    sequence_id: str
    step_number: int = Field(..., ge=1)
    scheduled_send_time: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivery_status: DeliveryStatus = DeliveryStatus.QUEUED
    resume_at: Optional[datetime] = None
    email_address: Optional[str] = None
    subject: Optional[str] = None


class Payment(BaseModel):
    """A payment received against an invoice."""
    amount: Decimal
    payment_date: datetime


class InvoiceSummary(BaseModel):
    """Read-only invoice data supplied by the invoice provider."""
    id: str
    number: Optional[str] = None
    company_id: Optional[str] = None
    customer_id: str
    customer_name: Optional[str] = None
    total_amount: Decimal
    currency: str = "AED"
    due_date: date
    payments: List[Payment] = Field(default_factory=list)

    @property
    def total_paid(self) -> Decimal:
        """Sum of all recorded payments."""
        return sum((payment.amount for payment in self.payments), Decimal("0"))


class CustomerSummary(BaseModel):
    """Customer attributes used by escalation scope checks."""
    id: str
    name: Optional[str] = None
    segment: Optional[str] = Field(None, description="Business type or segment label")


class ActivityRecord(BaseModel):
    """A timestamped engagement or customer activity."""
    type: ActivityType
    occurred_at: datetime


class DeliveryRecord(BaseModel):
    """A delivery-provider outcome for a follow-up email."""
    status: DeliveryStatus
    recorded_at: Optional[datetime] = None


class FollowUpContext(BaseModel):
    """Everything the evaluator needs to judge one active follow-up."""
    follow_up: FollowUpInstance
    invoice: InvoiceSummary
    customer: CustomerSummary
    activities: List[ActivityRecord] = Field(default_factory=list)
    delivery_records: List[DeliveryRecord] = Field(default_factory=list)
    last_customer_contact: Optional[datetime] = None

    def activities_of(self, *types: ActivityType) -> List[ActivityRecord]:
        """Activities matching any of the given types."""
        return [activity for activity in self.activities if activity.type in types]
