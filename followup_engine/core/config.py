"""Application configuration and settings."""

from datetime import date
from typing import Dict, List, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = Field(default="followup-engine")
    service_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_sample_rate: float = Field(default=1.0)

    # Business Calendar
    timezone: str = Field(default="Asia/Dubai")
    working_days: List[int] = Field(
        default=[6, 0, 1, 2, 3],  # Sunday to Thursday (Monday=0)
        description="Working weekdays, Python convention (Monday=0 ... Sunday=6)",
    )
    business_start_hour: int = Field(default=8)
    business_end_hour: int = Field(default=18)
    observance_start_hour: int = Field(default=9)
    observance_end_hour: int = Field(default=15)
    observance_periods: List[List[date]] = Field(
        default_factory=list,
        description="Inclusive [start, end] date pairs with shortened business hours",
    )
    holidays: List[date] = Field(default_factory=list)
    prayer_times: Dict[str, str] = Field(
        default={
            "fajr": "05:30",
            "dhuhr": "12:15",
            "asr": "15:30",
            "maghrib": "18:30",
            "isha": "20:00",
        }
    )
    prayer_buffer_minutes: int = Field(default=15)
    max_day_advances: int = Field(default=14)

    # Escalation Configuration
    escalation_lookback_days: int = Field(default=30)
    escalation_max_concurrency: int = Field(default=10)
    complaint_window_days: int = Field(default=7)
    manager_email: str = Field(default="manager@company.com")
    escalation_notification_enabled: bool = Field(default=True)

    # Consolidation Configuration
    min_invoices_for_consolidation: int = Field(default=2)
    max_invoices_per_consolidation: int = Field(default=25)
    default_contact_interval_days: int = Field(default=7)
    consolidation_lead_minutes: int = Field(default=5)
    priority_amount_reference: float = Field(default=100000.0)
    priority_age_reference_days: int = Field(default=180)
    priority_weight_amount: float = Field(default=0.40)
    priority_weight_age: float = Field(default=0.30)
    priority_weight_payment_history: float = Field(default=0.20)
    priority_weight_relationship: float = Field(default=0.10)
    default_payment_history_score: float = Field(default=0.5)
    default_relationship_score: float = Field(default=0.5)
    default_currency: str = Field(default="AED")

    model_config = SettingsConfigDict(
        env_prefix="FOLLOWUP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("working_days", mode="before")
    @classmethod
    def assemble_working_days(cls, v: Union[str, List[int]]) -> Union[List[int], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [int(i.strip()) for i in v.split(",") if i.strip()]
        return v

    @field_validator("working_days")
    @classmethod
    def validate_working_days(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("At least one working day is required")
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("Working days must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))

    @field_validator(
        "business_start_hour",
        "business_end_hour",
        "observance_start_hour",
        "observance_end_hour",
    )
    @classmethod
    def validate_hour(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError("Hours must be between 0 and 24")
        return v

    @field_validator(
        "priority_weight_amount",
        "priority_weight_age",
        "priority_weight_payment_history",
        "priority_weight_relationship",
        "default_payment_history_score",
        "default_relationship_score",
        "log_sample_rate",
    )
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Value must be between 0.0 and 1.0")
        return v

    @model_validator(mode="after")
    def validate_windows(self) -> "Settings":
        if self.business_start_hour >= self.business_end_hour:
            raise ValueError("business_start_hour must be before business_end_hour")
        if self.observance_start_hour >= self.observance_end_hour:
            raise ValueError("observance_start_hour must be before observance_end_hour")
        if self.min_invoices_for_consolidation > self.max_invoices_per_consolidation:
            raise ValueError("Consolidation minimum cannot exceed the maximum")
        return self


# Create global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
