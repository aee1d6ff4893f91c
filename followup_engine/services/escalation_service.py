"""
Escalation service.

Runs the periodic escalation pass over active follow-up instances: for each
instance the first matching rule (ascending priority) has its action applied,
and no further rules are considered for that instance in the same pass. A
separate resume pass re-queues held steps whose hold has expired.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import structlog

from followup_engine.core.config import Settings, get_settings
from followup_engine.core.exceptions import EscalationActionError
from followup_engine.core.logging import correlation_context, log_business_event, performance_timing
from followup_engine.models.audit import AuditActorType, AuditEntry, AuditEventType
from followup_engine.models.escalation import (
    DEFAULT_ESCALATION_RULES,
    AccelerateAction,
    ActionType,
    ChangeSequenceAction,
    EscalateUrgencyAction,
    EscalationRule,
    HoldAction,
    NotifyManagerAction,
    SkipStepAction,
)
from followup_engine.models.follow_up import DeliveryStatus, FollowUpContext, FollowUpInstance
from followup_engine.models.sequence import EmailStepConfig
from followup_engine.services.external import (
    AuditSink,
    FollowUpRepository,
    NotificationDispatcher,
    SequenceSource,
)
from followup_engine.utils.business_hours import (
    STANDARD_CONSTRAINTS,
    URGENT_CONSTRAINTS,
    BusinessHoursScheduler,
    ScheduleConstraints,
)
from followup_engine.utils.escalation_triggers import TriggerResult, find_matching_rule, sort_rules

logger = structlog.get_logger(__name__)


@dataclass
class EscalationActionRecord:
    """One rule application within a pass."""
    follow_up_id: str
    invoice_id: str
    rule_id: str
    rule_name: str
    action_type: str
    reason: str
    applied: bool
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscalationPassResult:
    """Aggregate outcome of one escalation pass."""
    processed: int = 0
    escalated: int = 0
    held: int = 0
    accelerated: int = 0
    failed: int = 0
    actions: List[EscalationActionRecord] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "escalated": self.escalated,
            "held": self.held,
            "accelerated": self.accelerated,
            "failed": self.failed,
            "actions": [action.to_dict() for action in self.actions],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class ResumePassResult:
    resumed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _ActionOutcome:
    applied: bool
    details: Dict[str, Any] = field(default_factory=dict)
    warning: Optional[str] = None


@dataclass
class _InstanceOutcome:
    action: Optional[EscalationActionRecord] = None
    error: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None


def _error_entry(follow_up_id: str, error: Exception) -> Dict[str, Any]:
    return {
        "follow_up_id": follow_up_id,
        "error": str(error),
        "error_type": type(error).__name__,
        "error_code": getattr(error, "error_code", None),
    }


class EscalationService:
    """
    Evaluates escalation rules against active follow-ups and applies actions.
    """

    def __init__(
        self,
        follow_ups: FollowUpRepository,
        sequences: SequenceSource,
        notifier: NotificationDispatcher,
        audit: AuditSink,
        scheduler: Optional[BusinessHoursScheduler] = None,
        rules: Optional[Iterable[EscalationRule]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize escalation service.

        Args:
            follow_ups: Follow-up instance persistence
            sequences: Source of sequence definitions
            notifier: Dispatcher for manager notifications
            audit: Append-only audit sink
            scheduler: Send time scheduler, built from settings when omitted
            rules: Escalation rules, defaults to DEFAULT_ESCALATION_RULES
            settings: Settings override
        """
        self.settings = settings or get_settings()
        self.follow_ups = follow_ups
        self.sequences = sequences
        self.notifier = notifier
        self.audit = audit
        self.scheduler = scheduler or BusinessHoursScheduler(settings=self.settings)
        self.rules = sort_rules(DEFAULT_ESCALATION_RULES if rules is None else rules)

        self._handlers: Dict[type, Callable[..., Awaitable[_ActionOutcome]]] = {
            AccelerateAction: self._accelerate,
            EscalateUrgencyAction: self._escalate_urgency,
            HoldAction: self._hold,
            ChangeSequenceAction: self._change_sequence,
            NotifyManagerAction: self._notify_manager,
            SkipStepAction: self._skip_step,
        }

        logger.info(
            "Escalation service initialized",
            rule_count=len(self.rules),
            max_concurrency=self.settings.escalation_max_concurrency,
        )

    async def process_escalations(self, now: Optional[datetime] = None) -> EscalationPassResult:
        """
        Run one escalation pass.

        A failure on one instance is recorded in the result and never stops
        the pass.

        Args:
            now: Evaluation time, defaults to the current UTC time

        Returns:
            EscalationPassResult with counts, applied actions, errors and warnings
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.settings.escalation_lookback_days)
        result = EscalationPassResult()

        with correlation_context(pass_name="escalation"), performance_timing("process_escalations"):
            contexts = await self.follow_ups.get_active_follow_ups(since)
            semaphore = asyncio.Semaphore(self.settings.escalation_max_concurrency)

            async def bounded(context: FollowUpContext) -> _InstanceOutcome:
                async with semaphore:
                    return await self._process_instance(context, now)

            outcomes = await asyncio.gather(*(bounded(context) for context in contexts))

        for outcome in outcomes:
            result.processed += 1
            if outcome.error is not None:
                result.failed += 1
                result.errors.append(outcome.error)
                continue
            if outcome.warning:
                result.warnings.append(outcome.warning)
            action = outcome.action
            if action is None:
                continue
            result.actions.append(action)
            if not action.applied:
                continue
            if action.action_type == ActionType.ESCALATE_URGENCY.value:
                result.escalated += 1
            elif action.action_type == ActionType.HOLD.value:
                result.held += 1
            elif action.action_type == ActionType.ACCELERATE.value:
                result.accelerated += 1

        logger.info(
            "Escalation pass complete",
            processed=result.processed,
            escalated=result.escalated,
            held=result.held,
            accelerated=result.accelerated,
            failed=result.failed,
        )
        return result

    async def _process_instance(self, context: FollowUpContext, now: datetime) -> _InstanceOutcome:
        follow_up = context.follow_up
        with correlation_context(follow_up_id=follow_up.id, customer_id=context.customer.id):
            try:
                match = find_matching_rule(self.rules, context, now)
                if match is None:
                    return _InstanceOutcome()

                rule, trigger = match
                record, warning = await self._execute_action(rule, trigger, context, now)
                return _InstanceOutcome(action=record, warning=warning)

            except Exception as e:
                logger.error(
                    "Error processing escalation",
                    follow_up_id=follow_up.id,
                    invoice_id=follow_up.invoice_id,
                    error=str(e),
                    exc_info=True,
                )
                return _InstanceOutcome(error=_error_entry(follow_up.id, e))

    async def _execute_action(
        self,
        rule: EscalationRule,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ):
        follow_up = context.follow_up
        handler = self._handlers.get(type(rule.action))
        if handler is None:
            logger.warning("Unrecognised escalation action", rule_id=rule.id)
            return None, None

        outcome = await handler(rule.action, trigger, context, now)
        record = EscalationActionRecord(
            follow_up_id=follow_up.id,
            invoice_id=follow_up.invoice_id,
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action.type,
            reason=trigger.reason or "",
            applied=outcome.applied,
            details=outcome.details,
        )

        if outcome.applied:
            await self._record_audit(rule, record, now)
            log_business_event(
                "follow_up_escalated",
                follow_up_id=follow_up.id,
                invoice_id=follow_up.invoice_id,
                rule_id=rule.id,
                action_type=record.action_type,
                reason=record.reason,
            )
        else:
            logger.warning(
                "Escalation action not applied",
                rule_id=rule.id,
                action_type=record.action_type,
                warning=outcome.warning,
            )

        return record, outcome.warning

    async def _record_audit(self, rule: EscalationRule, record: EscalationActionRecord, now: datetime) -> None:
        event_type = (
            AuditEventType.FOLLOW_UP_HELD
            if record.action_type == ActionType.HOLD.value
            else AuditEventType.FOLLOW_UP_ESCALATED
        )
        entry = AuditEntry(
            actor_type=AuditActorType.SYSTEM,
            type=event_type,
            description=f"{rule.name}: {record.reason}",
            metadata={
                "follow_up_id": record.follow_up_id,
                "invoice_id": record.invoice_id,
                "rule_id": record.rule_id,
                "action_type": record.action_type,
                "reason": record.reason,
                **record.details,
            },
            timestamp=now,
        )
        await self.audit.record(entry)

    async def _step_constraints(
        self,
        follow_up: FollowUpInstance,
        preset: ScheduleConstraints,
    ) -> ScheduleConstraints:
        """Constraints from the instance's sequence and step, or the preset when the sequence is unknown."""
        sequence = await self.sequences.get_sequence(follow_up.sequence_id)
        if sequence is None:
            return preset
        return ScheduleConstraints.for_sequence(
            sequence,
            sequence.step_at(follow_up.step_number),
            preferred_hours=preset.preferred_hours,
        )

    # Actions

    async def _accelerate(
        self,
        action: AccelerateAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        current = context.follow_up
        queued = await self.follow_ups.get_queued_steps(
            current.invoice_id, current.sequence_id, current.step_number
        )
        if not queued:
            return _ActionOutcome(
                applied=False,
                warning=f"No queued step to accelerate after step {current.step_number} for follow-up {current.id}",
            )

        next_step = queued[0]
        original = next_step.scheduled_send_time or now
        base = max(original - timedelta(days=action.reduce_days_by), now)
        constraints = await self._step_constraints(next_step, STANDARD_CONSTRAINTS)
        new_time = self.scheduler.next_available_send_time(base, constraints)
        await self.follow_ups.reschedule(next_step.id, new_time)

        return _ActionOutcome(
            applied=True,
            details={
                "rescheduled_follow_up_id": next_step.id,
                "previous_send_time": original.isoformat(),
                "new_send_time": new_time.isoformat(),
                "reduce_days_by": action.reduce_days_by,
            },
        )

    async def _escalate_urgency(
        self,
        action: EscalateUrgencyAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        current = context.follow_up
        sequence = await self.sequences.get_sequence(current.sequence_id)
        if sequence is None:
            raise EscalationActionError(
                f"Sequence {current.sequence_id} not found",
                action_type=ActionType.ESCALATE_URGENCY.value,
                follow_up_id=current.id,
            )

        target = next(
            (
                step for step in sorted(sequence.steps, key=lambda step: step.order)
                if step.order > current.step_number and step.cultural_tone == action.new_level
            ),
            None,
        )
        if target is None:
            raise EscalationActionError(
                f"No {action.new_level.value} step after step {current.step_number} "
                f"in sequence {current.sequence_id}",
                action_type=ActionType.ESCALATE_URGENCY.value,
                follow_up_id=current.id,
                new_level=action.new_level.value,
            )

        # Scheduling may raise, so it runs before any queued step is cancelled
        constraints = ScheduleConstraints.for_sequence(
            sequence, target, preferred_hours=URGENT_CONSTRAINTS.preferred_hours
        )
        send_time = self.scheduler.next_available_send_time(now, constraints)

        queued = await self.follow_ups.get_queued_steps(
            current.invoice_id, current.sequence_id, current.step_number
        )
        cancelled = 0
        if queued:
            cancelled = await self.follow_ups.update_delivery_status(
                [step.id for step in queued], DeliveryStatus.CANCELLED
            )

        subject = target.config.subject if isinstance(target.config, EmailStepConfig) else None
        created = await self.follow_ups.create_follow_up(
            FollowUpInstance(
                invoice_id=current.invoice_id,
                sequence_id=current.sequence_id,
                step_number=target.order,
                scheduled_send_time=send_time,
                delivery_status=DeliveryStatus.QUEUED,
                email_address=current.email_address,
                subject=subject or current.subject,
            )
        )

        return _ActionOutcome(
            applied=True,
            details={
                "new_level": action.new_level.value,
                "cancelled_steps": cancelled,
                "new_follow_up_id": created.id,
                "new_step_number": target.order,
                "scheduled_send_time": send_time.isoformat(),
            },
        )

    async def _hold(
        self,
        action: HoldAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        current = context.follow_up
        queued = await self.follow_ups.get_queued_steps(
            current.invoice_id, current.sequence_id, current.step_number, inclusive=True
        )
        ids = [step.id for step in queued]

        if action.permanent:
            status, resume_at = DeliveryStatus.CANCELLED, None
        else:
            status, resume_at = DeliveryStatus.HELD, now + timedelta(hours=action.duration_hours)

        affected = await self.follow_ups.update_delivery_status(ids, status, resume_at) if ids else 0

        return _ActionOutcome(
            applied=True,
            details={
                "hold_reason": action.reason,
                "permanent": action.permanent,
                "affected_steps": affected,
                "resume_at": resume_at.isoformat() if resume_at else None,
            },
        )

    async def _change_sequence(
        self,
        action: ChangeSequenceAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        current = context.follow_up
        details: Dict[str, Any] = {
            "sequence_type": action.sequence_type,
            "target_sequence_id": action.target_sequence_id,
            "reassigned": False,
        }

        target = None
        if action.target_sequence_id:
            target = await self.sequences.get_sequence(action.target_sequence_id)

        if target is None:
            logger.info(
                "No target sequence available, sequence unchanged",
                follow_up_id=current.id,
                target_sequence_id=action.target_sequence_id,
                sequence_type=action.sequence_type,
            )
            return _ActionOutcome(applied=True, details=details)

        await self.follow_ups.reassign_sequence(current.id, action.target_sequence_id)
        details["reassigned"] = True
        details["previous_sequence_id"] = current.sequence_id
        return _ActionOutcome(applied=True, details=details)

    async def _notify_manager(
        self,
        action: NotifyManagerAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        if not self.settings.escalation_notification_enabled:
            return _ActionOutcome(applied=True, details={"notified": False})

        invoice = context.invoice
        recipient = action.recipient or self.settings.manager_email
        content = (
            f"Escalation for invoice {invoice.number or invoice.id} "
            f"({invoice.total_amount} {invoice.currency}), customer "
            f"{invoice.customer_name or invoice.customer_id}: {trigger.reason}"
        )
        log_id = await self.notifier.send(recipient, content, now)

        return _ActionOutcome(
            applied=True,
            details={"notified": True, "recipient": recipient, "notification_log_id": log_id},
        )

    async def _skip_step(
        self,
        action: SkipStepAction,
        trigger: TriggerResult,
        context: FollowUpContext,
        now: datetime,
    ) -> _ActionOutcome:
        current = context.follow_up
        await self.follow_ups.update_delivery_status([current.id], DeliveryStatus.SKIPPED)
        return _ActionOutcome(applied=True, details={"skipped_step": current.step_number})

    # Resume pass

    async def resume_held_sequences(self, now: Optional[datetime] = None) -> ResumePassResult:
        """
        Re-queue HELD steps whose resume time has passed.

        Args:
            now: Evaluation time, defaults to the current UTC time

        Returns:
            ResumePassResult with the resumed count and per-instance errors
        """
        now = now or datetime.now(timezone.utc)
        result = ResumePassResult()

        with correlation_context(pass_name="resume"):
            held = await self.follow_ups.get_held_follow_ups(now)

            for follow_up in held:
                if follow_up.resume_at is not None and follow_up.resume_at > now:
                    continue
                try:
                    await self._resume(follow_up, now)
                    result.resumed += 1
                except Exception as e:
                    logger.error(
                        "Error resuming held follow-up",
                        follow_up_id=follow_up.id,
                        error=str(e),
                        exc_info=True,
                    )
                    result.errors.append(_error_entry(follow_up.id, e))

        logger.info("Resume pass complete", resumed=result.resumed, failed=len(result.errors))
        return result

    async def _resume(self, follow_up: FollowUpInstance, now: datetime) -> None:
        base = max(follow_up.scheduled_send_time or now, now)
        constraints = await self._step_constraints(follow_up, STANDARD_CONSTRAINTS)
        send_time = self.scheduler.next_available_send_time(base, constraints)
        await self.follow_ups.update_delivery_status([follow_up.id], DeliveryStatus.QUEUED)
        await self.follow_ups.reschedule(follow_up.id, send_time)
        await self.audit.record(
            AuditEntry(
                type=AuditEventType.FOLLOW_UP_RESUMED,
                description=f"Held follow-up {follow_up.id} resumed",
                metadata={
                    "follow_up_id": follow_up.id,
                    "invoice_id": follow_up.invoice_id,
                    "scheduled_send_time": send_time.isoformat(),
                },
                timestamp=now,
            )
        )
