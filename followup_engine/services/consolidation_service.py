"""
Consolidation service.

Groups overdue invoices per customer, scores and ranks the groups, enforces
the customer contact interval and creates one consolidated reminder per
eligible customer.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from followup_engine.core.config import Settings, get_settings
from followup_engine.core.exceptions import (
    ConsolidationAmountLimitError,
    ConsolidationPreferenceError,
    ContactIntervalError,
    InsufficientInvoicesError,
    TemplateNotFoundError,
    TooManyInvoicesError,
)
from followup_engine.core.logging import correlation_context, log_business_event, performance_timing
from followup_engine.models.audit import AuditEntry, AuditEventType
from followup_engine.models.consolidation import (
    ConsolidatedInvoice,
    ConsolidatedReminder,
    ConsolidationCandidate,
    ConsolidationPreference,
    CustomerConsolidationPreferences,
    EscalationLevel,
    OverdueInvoiceRecord,
    TemplateType,
)
from followup_engine.services.external import AuditSink, InvoiceSummaryProvider
from followup_engine.utils.business_hours import BUSINESS_CONSTRAINTS, BusinessHoursScheduler
from followup_engine.utils.priority_scoring import (
    calculate_priority_score,
    determine_escalation_level,
    get_priority_level,
)

logger = structlog.get_logger(__name__)

URGENT_LEVELS = (EscalationLevel.URGENT, EscalationLevel.FINAL)
HIGH_VALUE_AMOUNT = Decimal("10000")
AGED_INVOICE_DAYS = 30


@dataclass
class ConsolidationPassResult:
    """Aggregate outcome of one consolidation pass."""
    candidates: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    reminders: List[ConsolidatedReminder] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "reminder_ids": [reminder.id for reminder in self.reminders],
            "errors": list(self.errors),
        }


def select_template_type(level: EscalationLevel) -> TemplateType:
    """Template tier for an escalation level."""
    if level in URGENT_LEVELS:
        return TemplateType.URGENT_CONSOLIDATED_REMINDER
    return TemplateType.CONSOLIDATED_REMINDER


def build_consolidation_reason(invoice_count: int, total_amount: Decimal, currency: str, oldest_days: int) -> str:
    parts = [f"{invoice_count} overdue invoices"]
    if total_amount >= HIGH_VALUE_AMOUNT:
        parts.append(f"high value ({total_amount:,.2f} {currency})")
    if oldest_days >= AGED_INVOICE_DAYS:
        parts.append(f"oldest {oldest_days} days overdue")
    return "Consolidated due to " + ", ".join(parts)


class ConsolidationService:
    """
    Selects consolidation candidates and creates consolidated reminders.
    """

    def __init__(
        self,
        invoices: InvoiceSummaryProvider,
        audit: AuditSink,
        scheduler: Optional[BusinessHoursScheduler] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize consolidation service.

        Args:
            invoices: Invoice, contact history and reminder storage
            audit: Append-only audit sink
            scheduler: Send time scheduler, built from settings when omitted
            settings: Settings override
        """
        self.settings = settings or get_settings()
        self.invoices = invoices
        self.audit = audit
        self.scheduler = scheduler or BusinessHoursScheduler(settings=self.settings)

    async def get_consolidation_candidates(self, now: Optional[datetime] = None) -> List[ConsolidationCandidate]:
        """
        Compute consolidation candidates, highest priority first.

        Candidates that cannot be contacted yet are included with
        can_contact set to False.

        Args:
            now: Evaluation time, defaults to the current UTC time

        Returns:
            Candidates sorted by descending priority score, then customer id
        """
        now = now or datetime.now(timezone.utc)

        with correlation_context(pass_name="consolidation_selection"):
            records = await self.invoices.get_overdue_invoices(now)

            groups: Dict[str, List[OverdueInvoiceRecord]] = defaultdict(list)
            for record in records:
                if record.suppressed:
                    continue
                groups[record.customer.id].append(record)

            candidates: List[ConsolidationCandidate] = []
            for customer_id in sorted(groups):
                try:
                    candidate = await self._build_candidate(customer_id, groups[customer_id], now)
                except Exception as e:
                    logger.error(
                        "Error building consolidation candidate",
                        customer_id=customer_id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                if candidate is not None:
                    candidates.append(candidate)

        candidates.sort(key=lambda candidate: (-candidate.priority_score, candidate.customer_id))

        logger.info(
            "Consolidation candidates selected",
            customer_groups=len(groups),
            candidates=len(candidates),
            contactable=sum(1 for candidate in candidates if candidate.can_contact),
        )
        return candidates

    async def _build_candidate(
        self,
        customer_id: str,
        records: List[OverdueInvoiceRecord],
        now: datetime,
    ) -> Optional[ConsolidationCandidate]:
        profile = records[0].customer
        count = len(records)

        if count < self.settings.min_invoices_for_consolidation:
            return None
        if count > self.settings.max_invoices_per_consolidation:
            logger.debug("Too many invoices to consolidate", customer_id=customer_id, invoice_count=count)
            return None
        if profile.consolidation_preference == ConsolidationPreference.DISABLED:
            return None

        total_amount = sum((record.amount for record in records), Decimal("0"))
        if profile.max_consolidation_amount is not None and total_amount > profile.max_consolidation_amount:
            logger.debug(
                "Consolidated total above customer limit",
                customer_id=customer_id,
                total_amount=str(total_amount),
                limit=str(profile.max_consolidation_amount),
            )
            return None

        today = now.date()
        invoices = sorted(
            (
                ConsolidatedInvoice(
                    id=record.id,
                    number=record.number,
                    amount=record.amount,
                    currency=record.currency,
                    due_date=record.due_date,
                    days_overdue=max(0, (today - record.due_date).days),
                )
                for record in records
            ),
            key=lambda invoice: (-invoice.days_overdue, invoice.id),
        )
        oldest_days = invoices[0].days_overdue
        currency = records[0].currency

        interval_days = profile.preferred_contact_interval_days or self.settings.default_contact_interval_days
        last_contact = await self._last_contact_date(customer_id)
        next_eligible = last_contact + timedelta(days=interval_days) if last_contact else None
        can_contact = next_eligible is None or now >= next_eligible

        return ConsolidationCandidate(
            customer_id=customer_id,
            customer_name=profile.business_name or profile.name,
            customer_email=profile.email,
            company_id=profile.company_id,
            overdue_invoices=invoices,
            total_amount=total_amount,
            currency=currency,
            oldest_invoice_days=oldest_days,
            last_contact_date=last_contact,
            next_eligible_contact=next_eligible,
            priority_score=calculate_priority_score(
                total_amount,
                oldest_days,
                profile.payment_history_score,
                profile.relationship_score,
                settings=self.settings,
            ),
            escalation_level=determine_escalation_level(oldest_days, total_amount),
            can_contact=can_contact,
            consolidation_reason=build_consolidation_reason(count, total_amount, currency, oldest_days),
            preferences=CustomerConsolidationPreferences(
                consolidation_preference=profile.consolidation_preference,
                max_consolidation_amount=profile.max_consolidation_amount,
                contact_interval_days=interval_days,
            ),
        )

    async def _last_contact_date(self, customer_id: str) -> Optional[datetime]:
        consolidated = await self.invoices.get_last_consolidated_contact(customer_id)
        individual = await self.invoices.get_last_follow_up_contact(customer_id)
        contacts = [contact for contact in (consolidated, individual) if contact is not None]
        return max(contacts) if contacts else None

    async def create_consolidated_reminder(
        self,
        candidate: ConsolidationCandidate,
        now: Optional[datetime] = None,
    ) -> ConsolidatedReminder:
        """
        Create and persist a consolidated reminder for one candidate.

        The contact interval is checked against the candidate and again
        against a fresh contact history lookup just before saving.

        Args:
            candidate: Candidate from get_consolidation_candidates
            now: Creation time, defaults to the current UTC time

        Returns:
            The saved ConsolidatedReminder

        Raises:
            InsufficientInvoicesError: Fewer invoices than the minimum
            TooManyInvoicesError: More invoices than the maximum
            ConsolidationPreferenceError: Customer opted out
            ContactIntervalError: Customer contacted too recently
            ConsolidationAmountLimitError: Total above the customer's cap
            TemplateNotFoundError: No template for the escalation tier
            SchedulingError: No valid send slot found
        """
        now = now or datetime.now(timezone.utc)
        customer_id = candidate.customer_id
        preferences = candidate.preferences

        with correlation_context(pass_name="consolidation", customer_id=customer_id):
            if candidate.invoice_count < self.settings.min_invoices_for_consolidation:
                raise InsufficientInvoicesError(
                    customer_id, candidate.invoice_count, self.settings.min_invoices_for_consolidation
                )
            if candidate.invoice_count > self.settings.max_invoices_per_consolidation:
                raise TooManyInvoicesError(
                    customer_id, candidate.invoice_count, self.settings.max_invoices_per_consolidation
                )
            if preferences.consolidation_preference == ConsolidationPreference.DISABLED:
                raise ConsolidationPreferenceError(customer_id, preferences.consolidation_preference.value)
            if not candidate.can_contact:
                raise ContactIntervalError(customer_id, candidate.next_eligible_contact)

            last_contact = await self._last_contact_date(customer_id)
            if last_contact is not None:
                next_eligible = last_contact + timedelta(days=preferences.contact_interval_days)
                if now < next_eligible:
                    logger.warning(
                        "Contact recorded since candidate selection",
                        customer_id=customer_id,
                        last_contact=last_contact.isoformat(),
                    )
                    raise ContactIntervalError(customer_id, next_eligible)

            if (
                preferences.max_consolidation_amount is not None
                and candidate.total_amount > preferences.max_consolidation_amount
            ):
                raise ConsolidationAmountLimitError(
                    customer_id, candidate.total_amount, preferences.max_consolidation_amount
                )

            template_type = select_template_type(candidate.escalation_level)
            template_id = await self.invoices.find_consolidation_template(template_type)
            if template_id is None:
                raise TemplateNotFoundError(template_type.value, customer_id)

            lead_time = timedelta(minutes=self.settings.consolidation_lead_minutes)
            scheduled_for = self.scheduler.next_available_send_time(now + lead_time, BUSINESS_CONSTRAINTS)

            reminder = ConsolidatedReminder(
                customer_id=customer_id,
                company_id=candidate.company_id,
                invoice_ids=[invoice.id for invoice in candidate.overdue_invoices],
                total_amount=candidate.total_amount,
                currency=candidate.currency,
                invoice_count=candidate.invoice_count,
                escalation_level=candidate.escalation_level,
                template_type=template_type,
                template_id=template_id,
                scheduled_for=scheduled_for,
                priority_score=candidate.priority_score,
                consolidation_reason=candidate.consolidation_reason,
                last_contact_date=last_contact,
                next_eligible_contact=scheduled_for + timedelta(days=preferences.contact_interval_days),
                contact_interval_days=preferences.contact_interval_days,
                business_rules_applied={
                    "min_invoices": self.settings.min_invoices_for_consolidation,
                    "max_invoices": self.settings.max_invoices_per_consolidation,
                    "contact_interval_days": preferences.contact_interval_days,
                    "business_hours_only": True,
                    "max_consolidation_amount": (
                        str(preferences.max_consolidation_amount)
                        if preferences.max_consolidation_amount is not None
                        else None
                    ),
                },
                created_at=now,
            )
            saved = await self.invoices.save_consolidated_reminder(reminder)

            await self.audit.record(
                AuditEntry(
                    type=AuditEventType.CONSOLIDATION_CREATED,
                    description=(
                        f"Consolidated reminder for {saved.invoice_count} invoices "
                        f"({saved.total_amount} {saved.currency})"
                    ),
                    metadata={
                        "reminder_id": saved.id,
                        "customer_id": customer_id,
                        "invoice_ids": saved.invoice_ids,
                        "escalation_level": saved.escalation_level.value,
                        "template_type": saved.template_type.value,
                        "priority_score": saved.priority_score,
                        "scheduled_for": saved.scheduled_for.isoformat(),
                    },
                    timestamp=now,
                )
            )

            log_business_event(
                "consolidated_reminder_created",
                reminder_id=saved.id,
                customer_id=customer_id,
                invoice_count=saved.invoice_count,
                escalation_level=saved.escalation_level.value,
            )
            return saved

    async def process_consolidations(self, now: Optional[datetime] = None) -> ConsolidationPassResult:
        """
        Create reminders for every contactable candidate.

        A failure on one candidate is recorded and the pass continues.
        """
        now = now or datetime.now(timezone.utc)
        result = ConsolidationPassResult()

        with performance_timing("process_consolidations"):
            candidates = await self.get_consolidation_candidates(now)
            result.candidates = len(candidates)

            for candidate in candidates:
                if not candidate.can_contact:
                    result.skipped += 1
                    continue
                try:
                    reminder = await self.create_consolidated_reminder(candidate, now)
                except Exception as e:
                    logger.error(
                        "Error creating consolidated reminder",
                        customer_id=candidate.customer_id,
                        error=str(e),
                        exc_info=True,
                    )
                    result.failed += 1
                    result.errors.append({
                        "customer_id": candidate.customer_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "error_code": getattr(e, "error_code", None),
                    })
                    continue
                result.created += 1
                result.reminders.append(reminder)

        logger.info(
            "Consolidation pass complete",
            candidates=result.candidates,
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def summarize(self, candidates: List[ConsolidationCandidate]) -> Dict[str, Any]:
        """Summary figures for a candidate list."""
        eligible = [candidate for candidate in candidates if candidate.can_contact]
        distribution = {"high": 0, "medium": 0, "low": 0}
        levels = {level.value: 0 for level in EscalationLevel}
        for candidate in candidates:
            distribution[get_priority_level(candidate.priority_score)] += 1
            levels[candidate.escalation_level.value] += 1

        return {
            "total_candidates": len(candidates),
            "eligible_for_contact": len(eligible),
            "total_invoices": sum(candidate.invoice_count for candidate in candidates),
            "total_amount": sum((candidate.total_amount for candidate in candidates), Decimal("0")),
            "emails_saved": sum(candidate.invoice_count - 1 for candidate in eligible),
            "priority_distribution": distribution,
            "escalation_levels": levels,
        }
