"""
Follow-up sequence and step models.

Steps carry a type-specific configuration selected by the ``type`` tag, so an
EMAIL step only has email fields, a WAIT step only has delay fields, and so on.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StepType(str, Enum):
    """Kinds of sequence steps."""
    EMAIL = "EMAIL"
    WAIT = "WAIT"
    CONDITION = "CONDITION"
    ACTION = "ACTION"


class CulturalTone(str, Enum):
    """Tone tiers applied to reminder content, gentlest first."""
    GENTLE = "GENTLE"
    PROFESSIONAL = "PROFESSIONAL"
    FIRM = "FIRM"
    URGENT = "URGENT"


class DelayUnit(str, Enum):
    """Units for WAIT step delays."""
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class MessageLanguage(str, Enum):
    """Languages a reminder can be sent in."""
    ENGLISH = "ENGLISH"
    ARABIC = "ARABIC"
    BOTH = "BOTH"


# Days per delay unit
DELAY_UNIT_DAYS: Dict[DelayUnit, float] = {
    DelayUnit.HOURS: 1 / 24,
    DelayUnit.DAYS: 1.0,
    DelayUnit.WEEKS: 7.0,
}


class EmailStepConfig(BaseModel):
    """Configuration for an EMAIL step."""
    type: Literal["EMAIL"] = "EMAIL"
    template_id: Optional[str] = Field(None, description="Reference to a stored template")
    subject: Optional[str] = None
    custom_content: Optional[str] = Field(None, description="Inline content used instead of a template")
    language: MessageLanguage = MessageLanguage.BOTH


class WaitStepConfig(BaseModel):
    """Configuration for a WAIT step."""
    type: Literal["WAIT"] = "WAIT"
    delay: float = Field(1, description="Delay amount, must be positive to be valid")
    delay_unit: DelayUnit = DelayUnit.DAYS

    @property
    def delay_days(self) -> float:
        """Delay normalised to days."""
        return self.delay * DELAY_UNIT_DAYS[self.delay_unit]


class ConditionStepConfig(BaseModel):
    """Configuration for a CONDITION step."""
    type: Literal["CONDITION"] = "CONDITION"
    condition_type: Optional[str] = None
    condition_value: Optional[Any] = None


class ActionStepConfig(BaseModel):
    """Configuration for an ACTION step."""
    type: Literal["ACTION"] = "ACTION"
    action_type: Optional[str] = None
    action_config: Dict[str, Any] = Field(default_factory=dict)


StepConfig = Annotated[
    Union[EmailStepConfig, WaitStepConfig, ConditionStepConfig, ActionStepConfig],
    Field(discriminator="type"),
]


class UAEStepSettings(BaseModel):
    """Per-step cultural scheduling settings."""
    respect_business_hours: bool = True
    honor_prayer_times: bool = True
    respect_holidays: bool = True


class Step(BaseModel):
    """A single step of a follow-up sequence."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable step identifier")
    order: int = Field(..., ge=1, description="1-based position within the sequence")
    name: str = ""
    description: Optional[str] = None
    config: StepConfig
    cultural_tone: CulturalTone = CulturalTone.PROFESSIONAL
    uae_settings: UAEStepSettings = Field(default_factory=UAEStepSettings)

    @property
    def type(self) -> StepType:
        """Step type, taken from the config tag."""
        return StepType(self.config.type)


class FollowUpSequence(BaseModel):
    """An ordered reminder sequence executed against an invoice."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str = ""
    description: str = ""
    steps: List[Step] = Field(default_factory=list)
    active: bool = False
    uae_business_hours_only: bool = True
    respect_holidays: bool = True

    def get_step(self, step_id: str) -> Optional[Step]:
        """Find a step by id."""
        return next((step for step in self.steps if step.id == step_id), None)

    def step_at(self, order: int) -> Optional[Step]:
        """Find the step at a given 1-based position."""
        return next((step for step in self.steps if step.order == order), None)
