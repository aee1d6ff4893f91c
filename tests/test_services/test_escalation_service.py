"""
Tests for the escalation service.
"""

import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timedelta

from followup_engine.models.audit import AuditEventType
from followup_engine.models.escalation import (
    ChangeSequenceAction,
    EscalationRule,
    ManualTrigger,
    NotifyManagerAction,
    SkipStepAction,
)
from followup_engine.models.follow_up import (
    ActivityRecord,
    ActivityType,
    DeliveryRecord,
    DeliveryStatus,
    FollowUpInstance,
)
from followup_engine.models.sequence import CulturalTone, EmailStepConfig, FollowUpSequence, Step
from followup_engine.services.escalation_service import EscalationService
from followup_engine.utils.business_hours import BusinessHoursScheduler, StaticCalendar
from tests.fakes import (
    InMemoryFollowUpRepository,
    InMemorySequenceSource,
    RecordingAuditSink,
    RecordingNotifier,
    make_context,
    make_settings,
)

# Tuesday morning, inside business hours
NOW = datetime(2024, 3, 5, 10, 0)


def make_sequence(sequence_id: str = "seq-1", tones=None) -> FollowUpSequence:
    tones = tones or [CulturalTone.GENTLE, CulturalTone.PROFESSIONAL, CulturalTone.FIRM, CulturalTone.URGENT]
    return FollowUpSequence(
        id=sequence_id,
        name="Standard collection",
        steps=[
            Step(
                id=f"{sequence_id}-s{order}",
                order=order,
                name=f"{tone.value.title()} reminder",
                config=EmailStepConfig(template_id=f"tpl-{order}", subject=f"Reminder {order}"),
                cultural_tone=tone,
            )
            for order, tone in enumerate(tones, start=1)
        ],
    )


def queued(follow_up_id: str, step_number: int, send_time: datetime, invoice_id: str = "inv-1") -> FollowUpInstance:
    return FollowUpInstance(
        id=follow_up_id,
        invoice_id=invoice_id,
        sequence_id="seq-1",
        step_number=step_number,
        scheduled_send_time=send_time,
        delivery_status=DeliveryStatus.QUEUED,
    )


def opened(at: datetime) -> ActivityRecord:
    return ActivityRecord(type=ActivityType.EMAIL_OPENED, occurred_at=at)


class TestEscalationService:
    """Test cases for process_escalations."""

    def setup_method(self):
        """Set up test fixtures."""
        self.settings = make_settings()
        self.scheduler = BusinessHoursScheduler(calendar=StaticCalendar(), settings=self.settings)
        self.sequences = InMemorySequenceSource([make_sequence()])
        self.notifier = RecordingNotifier()
        self.audit = RecordingAuditSink()

    def build_service(self, contexts=(), instances=(), rules=None) -> EscalationService:
        self.repository = InMemoryFollowUpRepository(contexts, instances)
        return EscalationService(
            follow_ups=self.repository,
            sequences=self.sequences,
            notifier=self.notifier,
            audit=self.audit,
            scheduler=self.scheduler,
            rules=rules,
            settings=self.settings,
        )

    @pytest.mark.asyncio
    async def test_high_value_no_payment_escalates_urgency(self):
        """Test NO_PAYMENT on a high value invoice jumps to the urgent step."""
        sent_at = NOW - timedelta(hours=80)
        context = make_context(sent_at=sent_at, total_amount="20000", activities=[opened(sent_at + timedelta(hours=1))])
        service = self.build_service(
            [context],
            [queued("q2", 2, NOW + timedelta(days=3)), queued("q3", 3, NOW + timedelta(days=6))],
        )

        result = await service.process_escalations(NOW)

        assert result.processed == 1
        assert result.escalated == 1
        assert result.failed == 0
        action = result.actions[0]
        assert action.rule_id == "high-value-urgent"
        assert action.reason == "No payment received for 72 hours after follow-up"
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.CANCELLED
        assert self.repository.instances["q3"].delivery_status == DeliveryStatus.CANCELLED

        created = self.repository.created[0]
        assert created.step_number == 4
        assert created.delivery_status == DeliveryStatus.QUEUED
        assert created.scheduled_send_time == NOW
        assert created.subject == "Reminder 4"

        assert len(self.audit.entries) == 1
        entry = self.audit.entries[0]
        assert entry.type == AuditEventType.FOLLOW_UP_ESCALATED
        assert entry.metadata["cancelled_steps"] == 2
        assert entry.metadata["reason"] == action.reason

    @pytest.mark.asyncio
    async def test_no_response_accelerates_next_step(self):
        """Test NO_RESPONSE pulls the next queued step one day earlier."""
        context = make_context(sent_at=NOW - timedelta(hours=50))
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(days=2))])

        result = await service.process_escalations(NOW)

        assert result.accelerated == 1
        assert result.escalated == 0
        # Wednesday 10:00 is inside business and preferred hours
        assert self.repository.rescheduled == [("q2", datetime(2024, 3, 6, 10, 0))]

    @pytest.mark.asyncio
    async def test_urgency_scheduling_failure_keeps_queued_steps(self):
        """Test a failed urgent send time search leaves the remaining steps queued."""
        self.scheduler = BusinessHoursScheduler(
            calendar=StaticCalendar(holidays=[NOW.date() + timedelta(days=offset) for offset in range(30)]),
            settings=self.settings,
        )
        sent_at = NOW - timedelta(hours=80)
        context = make_context(sent_at=sent_at, total_amount="20000", activities=[opened(sent_at + timedelta(hours=1))])
        service = self.build_service(
            [context],
            [queued("q2", 2, NOW + timedelta(days=3)), queued("q3", 3, NOW + timedelta(days=6))],
        )

        result = await service.process_escalations(NOW)

        assert result.failed == 1
        assert result.escalated == 0
        assert result.errors[0]["error_code"] == "FUE_003"
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.QUEUED
        assert self.repository.instances["q3"].delivery_status == DeliveryStatus.QUEUED
        assert self.repository.created == []
        assert self.audit.entries == []

    @pytest.mark.asyncio
    async def test_counts_by_action_type(self):
        """Test escalated, held and accelerated count separate action types."""
        sent_at = NOW - timedelta(hours=80)
        contexts = [
            make_context(follow_up_id="fu-slow", invoice_id="inv-a", sent_at=NOW - timedelta(hours=50)),
            make_context(
                follow_up_id="fu-bounce",
                invoice_id="inv-b",
                sent_at=NOW - timedelta(hours=1),
                delivery_records=[DeliveryRecord(status=DeliveryStatus.BOUNCED)],
            ),
            make_context(
                follow_up_id="fu-big",
                invoice_id="inv-c",
                sent_at=sent_at,
                total_amount="20000",
                activities=[opened(sent_at + timedelta(hours=1))],
            ),
        ]
        service = self.build_service(
            contexts,
            [
                queued("qa", 2, NOW + timedelta(days=2), "inv-a"),
                queued("qb", 2, NOW + timedelta(days=2), "inv-b"),
                queued("qc", 2, NOW + timedelta(days=2), "inv-c"),
            ],
        )

        result = await service.process_escalations(NOW)

        assert (result.escalated, result.held, result.accelerated) == (1, 1, 1)
        assert sorted(action.action_type for action in result.actions) == [
            "ACCELERATE", "ESCALATE_URGENCY", "HOLD",
        ]

    @pytest.mark.asyncio
    async def test_accelerate_follows_sequence_scheduling_flags(self):
        """Test a sequence without business hours keeps the accelerated time as is."""
        self.sequences = InMemorySequenceSource([
            FollowUpSequence(
                id="seq-1",
                name="Relaxed collection",
                steps=make_sequence().steps,
                uae_business_hours_only=False,
            ),
        ])
        context = make_context(sent_at=NOW - timedelta(hours=50))
        # Saturday 21:00, pulled back one day to Friday 21:00
        service = self.build_service([context], [queued("q2", 2, datetime(2024, 3, 9, 21, 0))])

        result = await service.process_escalations(NOW)

        assert result.accelerated == 1
        assert self.repository.rescheduled == [("q2", datetime(2024, 3, 8, 21, 0))]

    @pytest.mark.asyncio
    async def test_accelerate_never_schedules_in_the_past(self):
        """Test acceleration is clamped to the current time."""
        context = make_context(sent_at=NOW - timedelta(hours=50))
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(hours=6))])

        await service.process_escalations(NOW)

        _, new_time = self.repository.rescheduled[0]
        assert new_time >= NOW

    @pytest.mark.asyncio
    async def test_accelerate_without_next_step_warns(self):
        """Test acceleration with nothing queued is recorded as a warning."""
        context = make_context(sent_at=NOW - timedelta(hours=50))
        service = self.build_service([context])

        result = await service.process_escalations(NOW)

        assert result.escalated == 0
        assert result.accelerated == 0
        assert result.actions[0].applied is False
        assert len(result.warnings) == 1
        assert self.audit.entries == []

    @pytest.mark.asyncio
    async def test_bounce_holds_queued_steps(self):
        """Test a bounce holds the remaining steps for 24 hours."""
        context = make_context(
            sent_at=NOW - timedelta(hours=1),
            delivery_records=[DeliveryRecord(status=DeliveryStatus.BOUNCED)],
        )
        service = self.build_service(
            [context],
            [queued("q2", 2, NOW + timedelta(days=2)), queued("q3", 3, NOW + timedelta(days=5))],
        )

        result = await service.process_escalations(NOW)

        assert result.held == 1
        assert result.escalated == 0
        assert result.accelerated == 0
        for follow_up_id in ("q2", "q3"):
            instance = self.repository.instances[follow_up_id]
            assert instance.delivery_status == DeliveryStatus.HELD
            assert instance.resume_at == NOW + timedelta(hours=24)
        assert self.audit.entries[0].type == AuditEventType.FOLLOW_UP_HELD

    @pytest.mark.asyncio
    async def test_complaint_cancels_permanently(self):
        """Test a complaint cancels every remaining step."""
        sent_at = NOW - timedelta(hours=10)
        context = make_context(
            sent_at=sent_at,
            activities=[ActivityRecord(type=ActivityType.CUSTOMER_COMPLAINT, occurred_at=sent_at + timedelta(hours=2))],
        )
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(days=2))])

        result = await service.process_escalations(NOW)

        instance = self.repository.instances["q2"]
        assert instance.delivery_status == DeliveryStatus.CANCELLED
        assert instance.resume_at is None
        assert result.actions[0].details["permanent"] is True

    @pytest.mark.asyncio
    async def test_only_first_matching_rule_applied(self):
        """Test one action per instance even when several rules match."""
        sent_at = NOW - timedelta(hours=10)
        context = make_context(
            sent_at=sent_at,
            delivery_records=[DeliveryRecord(status=DeliveryStatus.BOUNCED)],
            activities=[ActivityRecord(type=ActivityType.CUSTOMER_COMPLAINT, occurred_at=sent_at + timedelta(hours=1))],
        )
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(days=2))])

        result = await service.process_escalations(NOW)

        assert len(result.actions) == 1
        assert result.actions[0].rule_id == "email-bounce-hold"
        assert len(self.audit.entries) == 1
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.HELD

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        """Test a failing instance is recorded and the pass continues."""
        self.sequences = InMemorySequenceSource([
            make_sequence(tones=[CulturalTone.GENTLE, CulturalTone.PROFESSIONAL, CulturalTone.FIRM]),
        ])
        sent_at = NOW - timedelta(hours=80)
        failing = make_context(
            follow_up_id="fu-urgent",
            invoice_id="inv-big",
            sent_at=sent_at,
            total_amount="20000",
            activities=[opened(sent_at + timedelta(hours=1))],
        )
        bounced = make_context(
            follow_up_id="fu-bounce",
            invoice_id="inv-2",
            sent_at=NOW - timedelta(hours=1),
            delivery_records=[DeliveryRecord(status=DeliveryStatus.BOUNCED)],
        )
        service = self.build_service([failing, bounced], [queued("q2", 2, NOW + timedelta(days=2), "inv-2")])

        result = await service.process_escalations(NOW)

        assert result.processed == 2
        assert result.failed == 1
        assert result.held == 1
        assert result.errors[0]["follow_up_id"] == "fu-urgent"
        assert result.errors[0]["error_code"] == "FUE_004_ESCALATE_URGENCY"
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.HELD

    @pytest.mark.asyncio
    async def test_outcome_independent_of_order(self):
        """Test reversing the instance order does not change the result."""
        contexts = [
            make_context(follow_up_id="a", invoice_id="inv-a", sent_at=NOW - timedelta(hours=50)),
            make_context(
                follow_up_id="b",
                invoice_id="inv-b",
                sent_at=NOW - timedelta(hours=1),
                delivery_records=[DeliveryRecord(status=DeliveryStatus.BOUNCED)],
            ),
            make_context(follow_up_id="c", invoice_id="inv-c", sent_at=NOW - timedelta(hours=1)),
        ]
        instances = [
            queued("qa", 2, NOW + timedelta(days=2), "inv-a"),
            queued("qb", 2, NOW + timedelta(days=2), "inv-b"),
        ]

        forward = await self.build_service(contexts, instances).process_escalations(NOW)
        backward = await self.build_service(list(reversed(contexts)), instances).process_escalations(NOW)

        def summary(result):
            return (
                result.processed,
                result.escalated,
                result.held,
                result.accelerated,
                sorted((action.follow_up_id, action.rule_id) for action in result.actions),
            )

        assert summary(forward) == summary(backward)

    @pytest.mark.asyncio
    async def test_notify_manager(self):
        """Test NOTIFY_MANAGER dispatches without touching step state."""
        rules = [EscalationRule(id="manual", name="Manual", trigger=ManualTrigger(), action=NotifyManagerAction(), priority=1)]
        sent_at = NOW - timedelta(hours=3)
        context = make_context(
            sent_at=sent_at,
            activities=[ActivityRecord(type=ActivityType.MANUAL_ESCALATION, occurred_at=sent_at + timedelta(hours=1))],
        )
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(days=2))], rules=rules)

        result = await service.process_escalations(NOW)

        recipient, content, _ = self.notifier.sent[0]
        assert recipient == self.settings.manager_email
        assert "Manual escalation flag set" in content
        assert result.actions[0].details["notification_log_id"] == "log-1"
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_skip_step(self):
        """Test SKIP_STEP marks only the current step."""
        rules = [EscalationRule(id="skip", name="Skip", trigger=ManualTrigger(), action=SkipStepAction(), priority=1)]
        sent_at = NOW - timedelta(hours=3)
        context = make_context(
            sent_at=sent_at,
            activities=[ActivityRecord(type=ActivityType.MANUAL_ESCALATION, occurred_at=sent_at)],
        )
        service = self.build_service([context], [queued("q2", 2, NOW + timedelta(days=2))], rules=rules)

        await service.process_escalations(NOW)

        assert self.repository.instances["fu-1"].delivery_status == DeliveryStatus.SKIPPED
        assert self.repository.instances["q2"].delivery_status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_change_sequence(self):
        """Test CHANGE_SEQUENCE reassigns only when the target exists."""
        self.sequences = InMemorySequenceSource([make_sequence(), make_sequence("seq-gentle")])
        sent_at = NOW - timedelta(hours=3)
        flag = [ActivityRecord(type=ActivityType.MANUAL_ESCALATION, occurred_at=sent_at)]
        rules = [
            EscalationRule(
                id="to-gentle",
                name="Switch to gentle",
                trigger=ManualTrigger(),
                action=ChangeSequenceAction(target_sequence_id="seq-gentle"),
                priority=1,
            )
        ]

        service = self.build_service([make_context(sent_at=sent_at, activities=flag)], rules=rules)
        result = await service.process_escalations(NOW)

        assert self.repository.reassigned == [("fu-1", "seq-gentle")]
        assert result.actions[0].details["reassigned"] is True

    @pytest.mark.asyncio
    async def test_change_sequence_without_target_is_noop(self):
        """Test CHANGE_SEQUENCE with no catalogue entry leaves the instance alone."""
        rules = [
            EscalationRule(
                id="to-gentle",
                name="Switch to gentle",
                trigger=ManualTrigger(),
                action=ChangeSequenceAction(sequence_type="GENTLE"),
                priority=1,
            )
        ]
        sent_at = NOW - timedelta(hours=3)
        context = make_context(
            sent_at=sent_at,
            activities=[ActivityRecord(type=ActivityType.MANUAL_ESCALATION, occurred_at=sent_at)],
        )
        service = self.build_service([context], rules=rules)

        result = await service.process_escalations(NOW)

        assert self.repository.reassigned == []
        assert result.actions[0].details["reassigned"] is False
        assert len(self.audit.entries) == 1

    @pytest.mark.asyncio
    async def test_uses_lookback_window(self):
        """Test active follow-ups are fetched from the lookback window."""
        repository = AsyncMock()
        repository.get_active_follow_ups.return_value = []
        service = EscalationService(
            follow_ups=repository,
            sequences=self.sequences,
            notifier=self.notifier,
            audit=self.audit,
            scheduler=self.scheduler,
            settings=self.settings,
        )

        result = await service.process_escalations(NOW)

        repository.get_active_follow_ups.assert_awaited_once_with(NOW - timedelta(days=30))
        assert result.to_dict()["processed"] == 0

    @pytest.mark.asyncio
    async def test_repository_failure_propagates(self):
        """Test a failure fetching the batch is raised to the caller."""
        repository = AsyncMock()
        repository.get_active_follow_ups.side_effect = ConnectionError("database unavailable")
        service = EscalationService(
            follow_ups=repository,
            sequences=self.sequences,
            notifier=self.notifier,
            audit=self.audit,
            scheduler=self.scheduler,
            settings=self.settings,
        )

        with pytest.raises(ConnectionError):
            await service.process_escalations(NOW)


class TestResumeHeldSequences:
    """Test cases for resume_held_sequences."""

    def setup_method(self):
        """Set up test fixtures."""
        self.settings = make_settings()
        self.audit = RecordingAuditSink()
        self.repository = InMemoryFollowUpRepository(instances=[
            FollowUpInstance(
                id="due",
                invoice_id="inv-1",
                sequence_id="seq-1",
                step_number=2,
                scheduled_send_time=NOW - timedelta(hours=2),
                delivery_status=DeliveryStatus.HELD,
                resume_at=NOW - timedelta(hours=1),
            ),
            FollowUpInstance(
                id="later",
                invoice_id="inv-2",
                sequence_id="seq-1",
                step_number=2,
                scheduled_send_time=NOW,
                delivery_status=DeliveryStatus.HELD,
                resume_at=NOW + timedelta(hours=5),
            ),
        ])
        self.service = EscalationService(
            follow_ups=self.repository,
            sequences=InMemorySequenceSource(),
            notifier=RecordingNotifier(),
            audit=self.audit,
            scheduler=BusinessHoursScheduler(calendar=StaticCalendar(), settings=self.settings),
            settings=self.settings,
        )

    @pytest.mark.asyncio
    async def test_resumes_expired_holds(self):
        """Test only holds whose resume time has passed are re-queued."""
        result = await self.service.resume_held_sequences(NOW)

        assert result.resumed == 1
        assert result.errors == []
        due = self.repository.instances["due"]
        assert due.delivery_status == DeliveryStatus.QUEUED
        assert due.resume_at is None
        assert due.scheduled_send_time == NOW
        assert self.repository.instances["later"].delivery_status == DeliveryStatus.HELD
        assert self.audit.entries[0].type == AuditEventType.FOLLOW_UP_RESUMED

    @pytest.mark.asyncio
    async def test_resume_failure_isolated(self):
        """Test a failing resume is recorded and others continue."""
        self.service.audit = AsyncMock()
        self.service.audit.record.side_effect = RuntimeError("audit store down")

        result = await self.service.resume_held_sequences(NOW + timedelta(hours=6))

        assert result.resumed == 0
        assert len(result.errors) == 2
        assert {error["follow_up_id"] for error in result.errors} == {"due", "later"}
