"""
Task Stage Registry

Static definition of every task stage: display order, editor roles and the
legal next stages. This table is the only copy of the transition graph;
the WorkflowEngine, the API (GET /workflow/stages) and the UI all read it.

    draft(1) → published(2) → collecting(3) → evaluating(4) → in_progress(5)
      → reviewing(6) → publishing(8) → completed(9)
    side states: revision_required(7) → in_progress, cancelled(0) (terminal)

Usage:
    from tourlink.services.stage_registry import Stage, can_transition

    can_transition("collecting", "in_progress")   # True
    progress_for(Stage.REVIEWING)                 # 66.7
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class Stage(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    COLLECTING = "collecting"
    EVALUATING = "evaluating"
    IN_PROGRESS = "in_progress"
    REVIEWING = "reviewing"
    REVISION_REQUIRED = "revision_required"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    label: str
    color: str
    order: int
    editor_roles: frozenset
    next_stages: tuple
    estimated_days: int = 0

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "label": self.label,
            "color": self.color,
            "order": self.order,
            "editor_roles": sorted(self.editor_roles),
            "next_stages": [s.value for s in self.next_stages],
            "estimated_days": self.estimated_days,
        }


def _define(stage, label, color, order, roles, next_stages, estimated_days=0):
    return StageDefinition(
        stage=stage,
        label=label,
        color=color,
        order=order,
        editor_roles=frozenset(roles),
        next_stages=tuple(next_stages),
        estimated_days=estimated_days,
    )


STAGES = MappingProxyType({
    d.stage: d for d in (
        _define(Stage.DRAFT, "Draft", "#6B7280", 1, ["supplier"],
                [Stage.PUBLISHED]),
        _define(Stage.PUBLISHED, "Published", "#3B82F6", 2, ["supplier"],
                [Stage.COLLECTING], estimated_days=7),
        _define(Stage.COLLECTING, "Collecting proposals", "#F59E0B", 3, ["supplier"],
                [Stage.EVALUATING, Stage.IN_PROGRESS, Stage.CANCELLED], estimated_days=7),
        _define(Stage.EVALUATING, "Evaluating proposals", "#8B5CF6", 4, ["supplier"],
                [Stage.IN_PROGRESS, Stage.CANCELLED], estimated_days=3),
        _define(Stage.IN_PROGRESS, "In progress", "#10B981", 5, ["creator", "supplier"],
                [Stage.REVIEWING, Stage.CANCELLED], estimated_days=14),
        _define(Stage.REVIEWING, "Reviewing", "#EF4444", 6, ["supplier"],
                [Stage.PUBLISHING, Stage.REVISION_REQUIRED], estimated_days=3),
        _define(Stage.REVISION_REQUIRED, "Revision required", "#F97316", 7, ["creator"],
                [Stage.IN_PROGRESS]),
        _define(Stage.PUBLISHING, "Publishing", "#06B6D4", 8, ["media", "supplier"],
                [Stage.COMPLETED], estimated_days=7),
        _define(Stage.COMPLETED, "Completed", "#059669", 9, ["supplier"], []),
        _define(Stage.CANCELLED, "Cancelled", "#6B7280", 0, ["supplier"], []),
    )
})

# Stages that count towards the progress denominator (cancelled has order 0)
TOTAL_ACTIVE_STAGES = sum(1 for d in STAGES.values() if d.order > 0)

TERMINAL_STAGES = frozenset(s for s, d in STAGES.items() if not d.next_stages)

# Statuses that still accept applications; "open" is the legacy name of published
ACCEPTING_APPLICATIONS = frozenset({Stage.PUBLISHED.value, Stage.COLLECTING.value, "open"})


_ALIASES = {"open": Stage.PUBLISHED}


def to_stage(value) -> Stage | None:
    """Coerce a stage name (or Stage) to Stage; None for unknown names."""
    if isinstance(value, Stage):
        return value
    if value in _ALIASES:
        return _ALIASES[value]
    try:
        return Stage(value)
    except ValueError:
        return None


def get_stage(value) -> StageDefinition | None:
    stage = to_stage(value)
    return STAGES.get(stage) if stage else None


def next_stages(value) -> tuple:
    definition = get_stage(value)
    return definition.next_stages if definition else ()


def can_transition(from_stage, to_stage_value) -> bool:
    """True iff ``to`` is listed in ``from``'s next-stage set."""
    target = to_stage(to_stage_value)
    if target is None:
        return False
    return target in next_stages(from_stage)


def can_edit(value, role: str) -> bool:
    definition = get_stage(value)
    return bool(definition) and role in definition.editor_roles


def progress_for(value) -> float:
    """Progress percentage of a stage: order / active stages * 100."""
    definition = get_stage(value)
    if not definition:
        return 0.0
    return round(definition.order / TOTAL_ACTIVE_STAGES * 100, 1)


def is_terminal(value) -> bool:
    stage = to_stage(value)
    return stage in TERMINAL_STAGES


def as_dict() -> dict:
    """Serialisable registry, ordered by display order."""
    ordered = sorted(STAGES.values(), key=lambda d: (d.order == 0, d.order))
    return {
        "total_active_stages": TOTAL_ACTIVE_STAGES,
        "stages": [d.to_dict() for d in ordered],
    }
