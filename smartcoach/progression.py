import math
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


DEFAULT_INCREMENT = 2.5
INCREASE_TEMPO_THRESHOLD = 80
UNDERPERFORMANCE_RATIO = 80
FORM_CUE_TEMPO_THRESHOLD = 70
REST_PENALTY_SECONDS = 30
NON_WEIGHT_INCREASE = 1.05
WEIGHT_DECREASE = 0.95

TUT_INSTRUCTION = (
    "Focus on Time Under Tension: Control the weight on both the concentric and "
    "eccentric phases. Aim for 2-3 seconds up, 2-3 seconds down."
)


class TargetMetric(str, Enum):
    REPS = "reps"
    TIME = "time"
    DISTANCE = "distance"
    RPM = "rpm"
    CUSTOM = "custom"


class ProgressionType(str, Enum):
    INCREASE = "increase"
    MAINTAIN = "maintain"
    DECREASE = "decrease"
    REST_INCREASE = "rest_increase"


class SessionData(BaseModel):
    actual_reps: int = Field(..., ge=0)
    tempo_consistency: float = Field(..., ge=0, le=100, description="Percent of reps on tempo")
    target_reps: int = Field(..., ge=0)
    target_metric: TargetMetric = TargetMetric.REPS
    actual_weight: Optional[float] = None
    actual_value: Optional[float] = None
    target_weight: Optional[float] = None
    target_value: Optional[float] = None

    def performance_ratio(self) -> float:
        if self.target_metric == TargetMetric.REPS and self.target_reps > 0:
            return self.actual_reps / self.target_reps * 100
        if self.target_value and self.actual_value:
            return self.actual_value / self.target_value * 100
        return 100.0

    def is_weighted(self) -> bool:
        return self.target_metric == TargetMetric.REPS and bool(self.target_weight)


class PlanItem(BaseModel):
    id: str
    target_metric: TargetMetric
    target_value: float
    rest_seconds: int
    smart_progression_enabled: bool = True
    target_machine_type: str = ""
    target_unit: Optional[str] = None
    base_target_value: Optional[float] = None
    progression_increment: Optional[float] = None
    exercise_description: Optional[str] = None


class NextTarget(BaseModel):
    new_target_value: float
    new_rest_seconds: int
    progression_type: ProgressionType
    message: str
    updated_description: Optional[str] = None


def _round2(value: float) -> float:
    # half-up, so 0.125 -> 0.13 rather than banker's rounding
    return math.floor(value * 100 + 0.5) / 100


def next_target(session: SessionData, plan_item: PlanItem) -> NextTarget:
    if not plan_item.smart_progression_enabled:
        return NextTarget(
            new_target_value=plan_item.target_value,
            new_rest_seconds=plan_item.rest_seconds,
            progression_type=ProgressionType.MAINTAIN,
            message="SmartCoach progression is disabled for this exercise",
        )

    base_target = plan_item.base_target_value or plan_item.target_value
    increment = plan_item.progression_increment or DEFAULT_INCREMENT
    description = plan_item.exercise_description or ""

    if session.actual_reps >= session.target_reps and session.tempo_consistency >= INCREASE_TEMPO_THRESHOLD:
        if session.is_weighted():
            new_value = session.target_weight + increment
        else:
            new_value = base_target * NON_WEIGHT_INCREASE
        return NextTarget(
            new_target_value=_round2(new_value),
            new_rest_seconds=plan_item.rest_seconds,
            progression_type=ProgressionType.INCREASE,
            message=f"Great work! Target achieved with consistent tempo. Increasing target by {increment}kg.",
        )

    if session.performance_ratio() < UNDERPERFORMANCE_RATIO:
        if session.is_weighted() and session.target_weight > base_target:
            new_value = session.target_weight * WEIGHT_DECREASE
        else:
            new_value = base_target

        updated = description
        if session.tempo_consistency < FORM_CUE_TEMPO_THRESHOLD and "Time Under Tension" not in description:
            updated = f"{description}\n\n{TUT_INSTRUCTION}" if description else TUT_INSTRUCTION

        return NextTarget(
            new_target_value=_round2(new_value),
            new_rest_seconds=plan_item.rest_seconds + REST_PENALTY_SECONDS,
            progression_type=ProgressionType.REST_INCREASE,
            message="Performance below target. Adjusting rest time and maintaining current target. Focus on form and tempo.",
            updated_description=updated,
        )

    return NextTarget(
        new_target_value=plan_item.target_value,
        new_rest_seconds=plan_item.rest_seconds,
        progression_type=ProgressionType.MAINTAIN,
        message="Good progress! Maintain current target and focus on consistency.",
    )


def prepare_updated_plan_item(plan_item: PlanItem, result: NextTarget) -> dict:
    """Column updates the caller writes back to the plan item."""
    return {
        "target_value": result.new_target_value,
        "rest_seconds": result.new_rest_seconds,
        "exercise_description": result.updated_description or plan_item.exercise_description or None,
    }
