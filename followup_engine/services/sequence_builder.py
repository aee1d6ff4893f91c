"""
Sequence builder: the step state machine for reminder sequences.

Every operation returns an updated copy of the sequence for the caller to
persist. Step order is kept contiguous from 1 after every change.
"""

from typing import List
import uuid

import structlog

from followup_engine.core.exceptions import ValidationError
from followup_engine.models.sequence import (
    ActionStepConfig,
    ConditionStepConfig,
    CulturalTone,
    DelayUnit,
    EmailStepConfig,
    FollowUpSequence,
    MessageLanguage,
    Step,
    StepType,
    UAEStepSettings,
    WaitStepConfig,
)

logger = structlog.get_logger(__name__)

COPY_SUFFIX = " (Copy)"


def _new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:12]}"


def _default_config(step_type: StepType):
    if step_type == StepType.EMAIL:
        return EmailStepConfig(language=MessageLanguage.BOTH)
    if step_type == StepType.WAIT:
        return WaitStepConfig(delay=1, delay_unit=DelayUnit.DAYS)
    if step_type == StepType.CONDITION:
        return ConditionStepConfig()
    return ActionStepConfig()


def _renumber(steps: List[Step]) -> List[Step]:
    return [
        step if step.order == index else step.model_copy(update={"order": index})
        for index, step in enumerate(steps, start=1)
    ]


class SequenceBuilder:
    """Add, remove, copy, move and validate sequence steps."""

    def _ordered_steps(self, sequence: FollowUpSequence) -> List[Step]:
        return sorted(sequence.steps, key=lambda step: step.order)

    def _with_steps(self, sequence: FollowUpSequence, steps: List[Step]) -> FollowUpSequence:
        return sequence.model_copy(update={"steps": _renumber(steps)})

    def _index_of(self, steps: List[Step], step_id: str) -> int:
        for index, step in enumerate(steps):
            if step.id == step_id:
                return index
        raise ValidationError(f"Step {step_id} not found", field="step_id", step_id=step_id)

    def add_step(self, sequence: FollowUpSequence, step_type: StepType) -> FollowUpSequence:
        """Append a step of the given type with default settings."""
        step_type = StepType(step_type)
        steps = self._ordered_steps(sequence)
        step = Step(
            id=_new_step_id(),
            order=len(steps) + 1,
            name=f"{step_type.value.title()} Step",
            config=_default_config(step_type),
            cultural_tone=CulturalTone.PROFESSIONAL,
            uae_settings=UAEStepSettings(),
        )
        logger.debug("Step added", sequence_id=sequence.id, step_id=step.id, step_type=step_type.value)
        return self._with_steps(sequence, steps + [step])

    def delete_step(self, sequence: FollowUpSequence, step_id: str) -> FollowUpSequence:
        """Remove a step and close the gap in step order."""
        steps = self._ordered_steps(sequence)
        index = self._index_of(steps, step_id)
        del steps[index]
        logger.debug("Step deleted", sequence_id=sequence.id, step_id=step_id)
        return self._with_steps(sequence, steps)

    def duplicate_step(self, sequence: FollowUpSequence, step_id: str) -> FollowUpSequence:
        """Insert a copy of a step directly after the original."""
        steps = self._ordered_steps(sequence)
        index = self._index_of(steps, step_id)
        original = steps[index]
        copy = original.model_copy(
            update={"id": _new_step_id(), "name": f"{original.name}{COPY_SUFFIX}"},
            deep=True,
        )
        steps.insert(index + 1, copy)
        return self._with_steps(sequence, steps)

    def reorder(self, sequence: FollowUpSequence, from_order: int, to_order: int) -> FollowUpSequence:
        """Move the step at from_order to to_order (both 1-based)."""
        steps = self._ordered_steps(sequence)
        for position in (from_order, to_order):
            if not 1 <= position <= len(steps):
                raise ValidationError(
                    f"Position {position} is outside 1..{len(steps)}",
                    field="order",
                    from_order=from_order,
                    to_order=to_order,
                )
        step = steps.pop(from_order - 1)
        steps.insert(to_order - 1, step)
        return self._with_steps(sequence, steps)

    def update_step(self, sequence: FollowUpSequence, step: Step) -> FollowUpSequence:
        """Replace a step by id, keeping its position."""
        steps = self._ordered_steps(sequence)
        index = self._index_of(steps, step.id)
        steps[index] = step
        return self._with_steps(sequence, steps)

    def validate(self, sequence: FollowUpSequence) -> List[str]:
        """
        Collect every violation in the sequence.

        Returns:
            List of error messages, empty when the sequence is valid
        """
        errors: List[str] = []
        if not sequence.name.strip():
            errors.append("Sequence name is required")
        if not sequence.steps:
            errors.append("At least one step is required")

        for step in self._ordered_steps(sequence):
            if not step.name.strip():
                errors.append(f"Step {step.order} name is required")

            config = step.config
            if isinstance(config, EmailStepConfig):
                if not (config.template_id or (config.custom_content or "").strip()):
                    errors.append(f"Step {step.order}: Email template or custom content is required")
            elif isinstance(config, WaitStepConfig):
                if config.delay <= 0:
                    errors.append(f"Step {step.order}: Valid wait delay is required")

        return errors

    def ensure_valid(self, sequence: FollowUpSequence) -> FollowUpSequence:
        """Return the sequence unchanged, or raise ValidationError listing every violation."""
        errors = self.validate(sequence)
        if errors:
            logger.info("Sequence validation failed", sequence_id=sequence.id, violations=errors)
            raise ValidationError(
                f"Sequence has {len(errors)} validation error(s)",
                violations=errors,
                sequence_id=sequence.id,
            )
        return sequence

    def total_duration(self, sequence: FollowUpSequence) -> float:
        """Total WAIT time in days. Non-WAIT steps add nothing."""
        return sum(
            (
                step.config.delay_days
                for step in sequence.steps
                if isinstance(step.config, WaitStepConfig)
            ),
            0.0,
        )
