"""
StepGate - enforces the six-phase sequence.

    Created(0) → 1 project_scan → 2 language_detection → 3 file_documentation
    → 4 module_integration → 5 overview_generation → 6 connect_docs → Done

A phase may be entered only when it is exactly one past the last committed
phase. There are no backward edges; a fresh run creates a new workflow.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from docflow.core.errors import OutOfOrderError, ValidationError
from docflow.core.models import BATCH_PHASE, FINAL_PHASE, PHASE_TOOLS, Phase, Workflow

BATCH_NEXT_TOOL = "step3_get_next_task"


@dataclass
class NextStep:
    """What the driver should call next."""

    phase_index: Optional[int] = None
    name: Optional[str] = None
    tool: Optional[str] = None
    required: bool = True
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.completed:
            return {"completed": True}
        return {
            "phase_index": self.phase_index,
            "name": self.name,
            "tool": self.tool,
            "required": self.required,
        }


class StepGate:
    """Stateless phase-ordering checks over a workflow record."""

    def next_step(self, workflow: Workflow) -> NextStep:
        """Describe the next required call for ``workflow``."""
        if workflow.phase >= FINAL_PHASE:
            return NextStep(completed=True)

        target = Phase(workflow.phase + 1)
        tool = PHASE_TOOLS[target]
        # Queue exists but the batch phase is not committed yet: keep pulling tasks
        if target == BATCH_PHASE and workflow.task_queue is not None:
            tool = BATCH_NEXT_TOOL

        return NextStep(phase_index=int(target), name=target.step_name, tool=tool)

    def can_enter(self, workflow: Workflow, phase_index: int) -> bool:
        return phase_index == workflow.phase + 1

    def require_entry(self, workflow: Workflow, phase_index: int) -> None:
        """Raise unless ``phase_index`` may be entered now.

        Raises:
            ValidationError: ``phase_index`` is not a phase
            OutOfOrderError: a prerequisite phase is missing, or the phase
                was already committed
        """
        if phase_index not in Phase._value2member_map_:
            raise ValidationError(
                f"Unknown phase: {phase_index}",
                context={"workflow_id": workflow.id, "phase": phase_index},
            )

        if self.can_enter(workflow, phase_index):
            return

        expected = self.next_step(workflow)
        if phase_index <= workflow.phase:
            message = (
                f"Phase {phase_index} ({Phase(phase_index).step_name}) "
                f"is already complete"
            )
        else:
            missing = Phase(workflow.phase + 1)
            message = (
                f"Phase {phase_index} ({Phase(phase_index).step_name}) requires "
                f"phase {int(missing)} ({missing.step_name}) to complete first"
            )

        raise OutOfOrderError(
            message,
            context={
                "workflow_id": workflow.id,
                "phase": phase_index,
                "current_phase": workflow.phase,
                "next_step": expected.to_dict(),
            },
            hint=f"Call {expected.tool}" if expected.tool else "Workflow is complete",
        )
