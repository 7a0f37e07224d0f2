"""
Domain records for the day-by-day caregiver support program.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# one hundred years
MAX_DELAY_HOURS = 24 * 365 * 100


class ProgramStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"
    COMPLETED = "completed"


class BlockedReason(StrEnum):
    PROGRAM_PAUSED = "program_paused"
    PROGRAM_TERMINATED = "program_terminated"
    PREVIOUS_DAY_INCOMPLETE = "previous_day_incomplete"
    TIME_DELAY = "time_delay"
    OUTSIDE_ALLOWED_HOURS = "outside_allowed_hours"


class AdminActionType(StrEnum):
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATE = "terminate"
    MODIFY_DELAY = "modify_delay"
    MODIFY_SCHEDULE = "modify_schedule"
    RESET_DAY = "reset_day"
    FORCE_UNLOCK = "force_unlock"
    RESTART_PROGRAM = "restart_program"


class BurdenLevel(StrEnum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class Caregiver(BaseModel):
    id: str
    name: str
    email: str | None = None
    is_assigned: bool = False
    assigned_patient_id: str | None = None
    assigned_at: datetime | None = None


class Admin(BaseModel):
    id: str
    name: str
    token: str | None = None  # bearer token issued by the auth service


class CompletedDay(BaseModel):
    day: int
    completed_at: datetime
    notes: str = ""
    time_spent: float = Field(default=0, ge=0, allow_inf_nan=False)  # minutes


class ProgramProgress(BaseModel):
    caregiver_id: str
    current_day: int = Field(default=1, ge=1)
    completed_days: list[CompletedDay] = Field(default_factory=list)
    total_time_spent: float = Field(
        default=0, ge=0, allow_inf_nan=False
    )  # minutes
    is_completed: bool = False
    completed_at: datetime | None = None
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    burden_score: int | None = None
    burden_level: BurdenLevel | None = None

    def completion_for(self, day: int) -> CompletedDay | None:
        return next((d for d in self.completed_days if d.day == day), None)


class AllowedStartHours(BaseModel):
    start: int = Field(default=8, ge=0, le=23)
    end: int = Field(default=20, ge=0, le=23)


class CustomSettings(BaseModel):
    skip_weekends: bool = False
    allowed_start_hours: AllowedStartHours = Field(
        default_factory=AllowedStartHours
    )
    timezone: str = "UTC"  # IANA zone the allowed hours are expressed in


class AdminAction(BaseModel):
    """
    One entry of the append-only audit log. Never edited once written.
    """

    action: AdminActionType
    admin_id: str
    admin_name: str
    timestamp: datetime
    reason: str = ""
    previous_value: dict[str, Any]
    new_value: dict[str, Any]


class ProgramControl(BaseModel):
    caregiver_id: str
    status: ProgramStatus = ProgramStatus.ACTIVE
    delay_hours: float = Field(
        default=24, ge=0, le=MAX_DELAY_HOURS, allow_inf_nan=False
    )
    custom_settings: CustomSettings = Field(default_factory=CustomSettings)
    admin_actions: list[AdminAction] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DayOverride(BaseModel):
    day: int
    unlocked_by: str  # admin id
    unlocked_at: datetime
    reason: str = ""


class DayGating(BaseModel):
    caregiver_id: str
    current_available_day: int = 1
    can_start_current_day: bool = True
    blocked_reason: BlockedReason | None = None
    next_available_at: datetime | None = None
    last_day_completed_at: datetime | None = None
    overrides: list[DayOverride] = Field(default_factory=list)

    def override_for(self, day: int) -> DayOverride | None:
        return next((o for o in self.overrides if o.day == day), None)


class ProgramState(BaseModel):
    """
    The progress/control/gating triple for one caregiver. Always read and
    committed as a unit.
    """

    progress: ProgramProgress
    control: ProgramControl
    gating: DayGating
