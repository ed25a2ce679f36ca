"""
Trigger vocabulary.

Agents and humans drive the gate with short trigger words. Each trigger
maps to a target phase and an optional follow-up action:

    Init, Plan, Creative, QA, Build, Review   advance to that phase
    Archive                                   advance to Archive, then archive
    Self-Review, Quick-Review                 advance to Review, render report
    Check-Progress                            re-enter current phase, render report
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .schema import Phase


class Trigger(str, Enum):
    INIT = "Init"
    PLAN = "Plan"
    CREATIVE = "Creative"
    QA = "QA"
    BUILD = "Build"
    REVIEW = "Review"
    SELF_REVIEW = "Self-Review"
    QUICK_REVIEW = "Quick-Review"
    CHECK_PROGRESS = "Check-Progress"
    ARCHIVE = "Archive"


@dataclass(frozen=True)
class TriggerAction:
    """What a trigger does. ``phase`` None means the task's current phase."""
    phase: Optional[Phase]
    render_report: bool = False
    archive: bool = False


TRIGGERS: Dict[Trigger, TriggerAction] = {
    Trigger.INIT: TriggerAction(Phase.INIT),
    Trigger.PLAN: TriggerAction(Phase.PLAN),
    Trigger.CREATIVE: TriggerAction(Phase.CREATIVE),
    Trigger.QA: TriggerAction(Phase.QA),
    Trigger.BUILD: TriggerAction(Phase.BUILD),
    Trigger.REVIEW: TriggerAction(Phase.REVIEW),
    Trigger.SELF_REVIEW: TriggerAction(Phase.REVIEW, render_report=True),
    Trigger.QUICK_REVIEW: TriggerAction(Phase.REVIEW, render_report=True),
    Trigger.CHECK_PROGRESS: TriggerAction(None, render_report=True),
    Trigger.ARCHIVE: TriggerAction(Phase.ARCHIVE, archive=True),
}

_BY_NAME = {t.value.lower().replace("-", "").replace("_", ""): t for t in Trigger}


def parse_trigger(text: str) -> Trigger:
    """
    Look up a trigger word, ignoring case, hyphens and underscores.

    Raises:
        ValueError: If the word is not in the vocabulary
    """
    key = text.strip().lower().replace("-", "").replace("_", "").replace(" ", "")
    try:
        return _BY_NAME[key]
    except KeyError:
        raise ValueError(
            f"Unknown trigger '{text}'. Valid triggers: {', '.join(t.value for t in Trigger)}"
        )
