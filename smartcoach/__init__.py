"""
SmartCoach Package

Stateless workout progression: turns a finished exercise session into the
next target, rest time and coaching cue for the plan item.
"""

from .progression import (
    NextTarget,
    PlanItem,
    ProgressionType,
    SessionData,
    TargetMetric,
    next_target,
    prepare_updated_plan_item,
)

__all__ = [
    "NextTarget",
    "PlanItem",
    "ProgressionType",
    "SessionData",
    "TargetMetric",
    "next_target",
    "prepare_updated_plan_item",
]
