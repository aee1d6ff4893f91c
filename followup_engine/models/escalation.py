"""
Escalation rule models.

Triggers and actions are tagged unions: each condition and each action type
carries only the parameters it needs.
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from followup_engine.models.sequence import CulturalTone


class TriggerCondition(str, Enum):
    """Observed behaviours that can trigger an escalation."""
    NO_RESPONSE = "NO_RESPONSE"
    NO_PAYMENT = "NO_PAYMENT"
    PARTIAL_PAYMENT = "PARTIAL_PAYMENT"
    BOUNCE = "BOUNCE"
    COMPLAINT = "COMPLAINT"
    MANUAL = "MANUAL"


class ActionType(str, Enum):
    """Actions an escalation rule can take."""
    ACCELERATE = "ACCELERATE"
    ESCALATE_URGENCY = "ESCALATE_URGENCY"
    HOLD = "HOLD"
    CHANGE_SEQUENCE = "CHANGE_SEQUENCE"
    NOTIFY_MANAGER = "NOTIFY_MANAGER"
    SKIP_STEP = "SKIP_STEP"


# Triggers

class NoResponseTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["NO_RESPONSE"] = "NO_RESPONSE"
    timeframe_hours: float = Field(48, gt=0)


class NoPaymentTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["NO_PAYMENT"] = "NO_PAYMENT"
    timeframe_hours: float = Field(72, gt=0)


class PartialPaymentTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["PARTIAL_PAYMENT"] = "PARTIAL_PAYMENT"
    threshold: float = Field(0.5, gt=0, le=1)


class BounceTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["BOUNCE"] = "BOUNCE"


class ComplaintTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["COMPLAINT"] = "COMPLAINT"
    window_days: int = Field(7, gt=0)


class ManualTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)
    condition: Literal["MANUAL"] = "MANUAL"


EscalationTrigger = Annotated[
    Union[
        NoResponseTrigger,
        NoPaymentTrigger,
        PartialPaymentTrigger,
        BounceTrigger,
        ComplaintTrigger,
        ManualTrigger,
    ],
    Field(discriminator="condition"),
]


# Actions

class AccelerateAction(BaseModel):
    """Pull the next queued step earlier."""
    model_config = ConfigDict(frozen=True)
    type: Literal["ACCELERATE"] = "ACCELERATE"
    reduce_days_by: int = Field(1, ge=1)


class EscalateUrgencyAction(BaseModel):
    """Replace remaining steps with the next step at a harsher tone."""
    model_config = ConfigDict(frozen=True)
    type: Literal["ESCALATE_URGENCY"] = "ESCALATE_URGENCY"
    new_level: CulturalTone = CulturalTone.URGENT


class HoldAction(BaseModel):
    """Pause queued steps for a while, or stop them for good."""
    model_config = ConfigDict(frozen=True)
    type: Literal["HOLD"] = "HOLD"
    reason: str = "Sequence held"
    duration_hours: float = Field(24, gt=0)
    permanent: bool = False


class ChangeSequenceAction(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["CHANGE_SEQUENCE"] = "CHANGE_SEQUENCE"
    target_sequence_id: Optional[str] = None
    sequence_type: Optional[str] = None


class NotifyManagerAction(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["NOTIFY_MANAGER"] = "NOTIFY_MANAGER"
    recipient: Optional[str] = Field(None, description="Defaults to the configured manager email")


class SkipStepAction(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["SKIP_STEP"] = "SKIP_STEP"


EscalationAction = Annotated[
    Union[
        AccelerateAction,
        EscalateUrgencyAction,
        HoldAction,
        ChangeSequenceAction,
        NotifyManagerAction,
        SkipStepAction,
    ],
    Field(discriminator="type"),
]


class RuleScope(BaseModel):
    """Conditions an instance must satisfy before a rule's trigger is checked."""
    model_config = ConfigDict(frozen=True)

    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    customer_segments: Optional[List[str]] = None
    days_since_last_contact: Optional[int] = None


class EscalationRule(BaseModel):
    """A configured escalation rule. Lower priority numbers are evaluated first."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    trigger: EscalationTrigger
    action: EscalationAction
    priority: int
    active: bool = True
    scope: RuleScope = Field(default_factory=RuleScope)


DEFAULT_ESCALATION_RULES: List[EscalationRule] = [
    EscalationRule(
        id="no-response-48h",
        name="No Response in 48 Hours",
        trigger=NoResponseTrigger(timeframe_hours=48),
        action=AccelerateAction(reduce_days_by=1),
        priority=1,
        scope=RuleScope(min_amount=Decimal("1000")),
    ),
    EscalationRule(
        id="high-value-urgent",
        name="High Value Invoice Urgent Escalation",
        trigger=NoPaymentTrigger(timeframe_hours=72),
        action=EscalateUrgencyAction(new_level=CulturalTone.URGENT),
        priority=2,
        scope=RuleScope(min_amount=Decimal("10000")),
    ),
    EscalationRule(
        id="email-bounce-hold",
        name="Email Bounce - Hold Sequence",
        trigger=BounceTrigger(),
        action=HoldAction(reason="Email bounced", duration_hours=24),
        priority=3,
    ),
    EscalationRule(
        id="complaint-stop",
        name="Customer Complaint - Stop All",
        trigger=ComplaintTrigger(),
        action=HoldAction(reason="Customer complaint received", permanent=True),
        priority=4,
    ),
    EscalationRule(
        id="partial-payment-gentle",
        name="Partial Payment - Switch to Gentle",
        trigger=PartialPaymentTrigger(threshold=0.5),
        action=ChangeSequenceAction(sequence_type="GENTLE"),
        priority=5,
    ),
]
