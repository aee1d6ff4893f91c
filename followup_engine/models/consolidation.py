"""
Customer consolidation models.

A ConsolidationCandidate is computed fresh on every selector run and is only
persisted, as a ConsolidatedReminder, once a reminder is created from it.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field

from followup_engine.models.follow_up import DeliveryStatus


class EscalationLevel(str, Enum):
    """Tone and urgency tiers for consolidated reminders."""
    POLITE = "POLITE"
    FIRM = "FIRM"
    URGENT = "URGENT"
    FINAL = "FINAL"


class ConsolidationPreference(str, Enum):
    """Customer opt-in state for consolidated reminders."""
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    PREFERRED = "PREFERRED"


class TemplateType(str, Enum):
    """Template tiers for consolidated reminders."""
    CONSOLIDATED_REMINDER = "CONSOLIDATED_REMINDER"
    URGENT_CONSOLIDATED_REMINDER = "URGENT_CONSOLIDATED_REMINDER"


class CustomerProfile(BaseModel):
    """Customer data and consolidation preferences."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    company_id: Optional[str] = None
    business_name: Optional[str] = None
    consolidation_preference: ConsolidationPreference = ConsolidationPreference.ENABLED
    max_consolidation_amount: Optional[Decimal] = None
    preferred_contact_interval_days: Optional[int] = Field(None, gt=0)
    payment_history_score: Optional[float] = Field(None, ge=0, le=1)
    relationship_score: Optional[float] = Field(None, ge=0, le=1)


class OverdueInvoiceRecord(BaseModel):
    """An overdue invoice row together with its customer."""
    id: str
    number: Optional[str] = None
    amount: Decimal
    currency: str = "AED"
    issue_date: Optional[date] = None
    due_date: date
    suppressed: bool = False
    customer: CustomerProfile


class ConsolidatedInvoice(BaseModel):
    """An invoice as carried by a consolidation candidate."""
    id: str
    number: Optional[str] = None
    amount: Decimal
    currency: str = "AED"
    due_date: date
    days_overdue: int


class CustomerConsolidationPreferences(BaseModel):
    consolidation_preference: ConsolidationPreference = ConsolidationPreference.ENABLED
    max_consolidation_amount: Optional[Decimal] = None
    contact_interval_days: int


class ConsolidationCandidate(BaseModel):
    """A customer whose overdue invoices could go out as one reminder."""
    customer_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    company_id: Optional[str] = None
    overdue_invoices: List[ConsolidatedInvoice]
    total_amount: Decimal
    currency: str = "AED"
    oldest_invoice_days: int
    last_contact_date: Optional[datetime] = None
    next_eligible_contact: Optional[datetime] = None
    priority_score: int = Field(..., ge=0, le=100)
    escalation_level: EscalationLevel
    can_contact: bool
    consolidation_reason: str = ""
    preferences: CustomerConsolidationPreferences

    @property
    def invoice_count(self) -> int:
        return len(self.overdue_invoices)


class ConsolidatedReminder(BaseModel):
    """The persisted record of one consolidated reminder."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: str
    company_id: Optional[str] = None
    invoice_ids: List[str]
    total_amount: Decimal
    currency: str = "AED"
    invoice_count: int
    escalation_level: EscalationLevel
    template_type: TemplateType
    template_id: Optional[str] = None
    scheduled_for: datetime
    delivery_status: DeliveryStatus = DeliveryStatus.QUEUED
    priority_score: int
    consolidation_reason: str = ""
    last_contact_date: Optional[datetime] = None
    next_eligible_contact: datetime
    contact_interval_days: int
    business_rules_applied: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
