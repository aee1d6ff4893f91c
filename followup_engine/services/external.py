"""External collaborator interfaces.

The engine never talks to a database, mail provider or calendar service
directly. Callers wire in implementations of these protocols.
"""

from datetime import date, datetime, time
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from followup_engine.models.audit import AuditEntry
from followup_engine.models.consolidation import (
    ConsolidatedReminder,
    OverdueInvoiceRecord,
    TemplateType,
)
from followup_engine.models.follow_up import DeliveryStatus, FollowUpContext, FollowUpInstance
from followup_engine.models.sequence import FollowUpSequence


@runtime_checkable
class CalendarProvider(Protocol):
    """Read-only lookup of non-working dates and prayer windows keyed by date."""

    def is_holiday(self, day: date) -> bool:
        ...

    def prayer_windows(self, day: date) -> List[Tuple[time, time]]:
        """Blocked intervals for the day, buffers already applied."""
        ...

    def is_observance_period(self, day: date) -> bool:
        """Whether shortened business hours apply on this day."""
        ...


class SequenceSource(Protocol):
    async def get_sequence(self, sequence_id: str) -> Optional[FollowUpSequence]:
        ...


class FollowUpRepository(Protocol):
    """Persistence for follow-up instances."""

    async def get_active_follow_ups(self, since: datetime) -> List[FollowUpContext]:
        ...

    async def get_queued_steps(
        self,
        invoice_id: str,
        sequence_id: str,
        from_step: int,
        inclusive: bool = False,
    ) -> List[FollowUpInstance]:
        """QUEUED instances for the invoice and sequence, ordered by step number."""
        ...

    async def update_delivery_status(
        self,
        follow_up_ids: Sequence[str],
        status: DeliveryStatus,
        resume_at: Optional[datetime] = None,
    ) -> int:
        ...

    async def reschedule(self, follow_up_id: str, send_time: datetime) -> None:
        ...

    async def create_follow_up(self, follow_up: FollowUpInstance) -> FollowUpInstance:
        ...

    async def reassign_sequence(self, follow_up_id: str, sequence_id: str) -> None:
        ...

    async def get_held_follow_ups(self, resume_before: datetime) -> List[FollowUpInstance]:
        ...


class InvoiceSummaryProvider(Protocol):
    """Invoice, contact history and consolidated reminder storage."""

    async def get_overdue_invoices(self, now: datetime) -> List[OverdueInvoiceRecord]:
        ...

    async def get_last_consolidated_contact(self, customer_id: str) -> Optional[datetime]:
        ...

    async def get_last_follow_up_contact(self, customer_id: str) -> Optional[datetime]:
        ...

    async def save_consolidated_reminder(self, reminder: ConsolidatedReminder) -> ConsolidatedReminder:
        ...

    async def find_consolidation_template(self, template_type: TemplateType) -> Optional[str]:
        ...


class NotificationDispatcher(Protocol):
    async def send(self, recipient: str, content: str, scheduled_time: datetime) -> str:
        """Queue a message and return its log id. Delivery outcomes arrive later."""
        ...


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...
