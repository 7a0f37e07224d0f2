"""
Day gating calculator.

Decides whether a caregiver may start their current program day.
``recalculate_gating`` is a pure function of its inputs: it never reads the
clock, never logs and never mutates the records passed in. Callers persist
the result.

Rules, first match wins:

1. paused / terminated programs are closed (``program_<status>``).
2. Day 1, or nothing completed yet, is open immediately.
3. The previous day must have a completion entry, otherwise the gate fails
   safe with ``previous_day_incomplete``.
4. The day opens ``delay_hours`` after the previous day was completed,
   rolled to Monday when weekends are skipped, and only inside the allowed
   start hours of the caregiver's local day.
5. An admin override for the current day opens the gate unless rule 1
   applied.
"""

import logging
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from caregiver_program.models import (
    BlockedReason,
    DayGating,
    DayOverride,
    ProgramControl,
    ProgramProgress,
    ProgramState,
    ProgramStatus,
)

logger = logging.getLogger(__name__)

_SATURDAY = 5
_SUNDAY = 6


class GateResult(BaseModel):
    can_start_current_day: bool
    blocked_reason: BlockedReason | None = None
    next_available_at: datetime | None = None
    current_available_day: int
    last_day_completed_at: datetime | None = None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _roll_past_weekend(
    moment: datetime, tz: ZoneInfo, start_hour: int
) -> datetime:
    local = moment.astimezone(tz)
    weekday = local.weekday()
    if weekday not in (_SATURDAY, _SUNDAY):
        return moment

    days_to_monday = 2 if weekday == _SATURDAY else 1
    monday = (local + timedelta(days=days_to_monday)).replace(
        hour=start_hour, minute=0, second=0, microsecond=0
    )
    return monday.astimezone(UTC)


def _next_window_start(
    now: datetime, tz: ZoneInfo, start_hour: int, end_hour: int
) -> datetime:
    local = now.astimezone(tz)
    opening = local.replace(
        hour=start_hour, minute=0, second=0, microsecond=0
    )
    if local.hour > end_hour:
        opening += timedelta(days=1)
    return opening.astimezone(UTC)


def _within_allowed_hours(
    now: datetime, tz: ZoneInfo, start_hour: int, end_hour: int
) -> bool:
    hour = now.astimezone(tz).hour
    return start_hour <= hour <= end_hour


def recalculate_gating(
    progress: ProgramProgress,
    control: ProgramControl,
    overrides: list[DayOverride],
    now: datetime,
) -> GateResult:
    now = _aware(now)
    current_day = progress.current_day

    if control.status in (ProgramStatus.PAUSED, ProgramStatus.TERMINATED):
        return GateResult(
            can_start_current_day=False,
            blocked_reason=BlockedReason(f"program_{control.status}"),
            current_available_day=current_day,
        )

    result = _time_gate(progress, control, now)

    if any(o.day == current_day for o in overrides):
        result = result.model_copy(
            update={"can_start_current_day": True, "blocked_reason": None}
        )
    return result


def _time_gate(
    progress: ProgramProgress, control: ProgramControl, now: datetime
) -> GateResult:
    current_day = progress.current_day

    if current_day == 1 or not progress.completed_days:
        return GateResult(
            can_start_current_day=True,
            next_available_at=now,
            current_available_day=current_day,
        )

    previous = progress.completion_for(current_day - 1)
    if previous is None:
        return GateResult(
            can_start_current_day=False,
            blocked_reason=BlockedReason.PREVIOUS_DAY_INCOMPLETE,
            current_available_day=current_day,
        )

    settings = control.custom_settings
    tz = ZoneInfo(settings.timezone)
    start_hour = settings.allowed_start_hours.start
    end_hour = settings.allowed_start_hours.end
    completed_at = _aware(previous.completed_at)

    next_available = completed_at + timedelta(hours=control.delay_hours)
    if settings.skip_weekends:
        next_available = _roll_past_weekend(next_available, tz, start_hour)

    if now < next_available:
        return GateResult(
            can_start_current_day=False,
            blocked_reason=BlockedReason.TIME_DELAY,
            next_available_at=next_available,
            current_available_day=current_day,
            last_day_completed_at=completed_at,
        )

    if not _within_allowed_hours(now, tz, start_hour, end_hour):
        return GateResult(
            can_start_current_day=False,
            blocked_reason=BlockedReason.OUTSIDE_ALLOWED_HOURS,
            next_available_at=_next_window_start(
                now, tz, start_hour, end_hour
            ),
            current_available_day=current_day,
            last_day_completed_at=completed_at,
        )

    return GateResult(
        can_start_current_day=True,
        next_available_at=next_available,
        current_available_day=current_day,
        last_day_completed_at=completed_at,
    )


def warn_if_inconsistent(state: ProgramState) -> None:
    """
    Report a gate that fell back to previous_day_incomplete. Progress moved
    past a day that has no completion entry, which needs an operator.
    """
    if state.gating.blocked_reason == BlockedReason.PREVIOUS_DAY_INCOMPLETE:
        logger.warning(
            "Caregiver %s is on day %s without a completion for day %s",
            state.progress.caregiver_id,
            state.progress.current_day,
            state.progress.current_day - 1,
        )


def build_gating(
    progress: ProgramProgress,
    control: ProgramControl,
    overrides: list[DayOverride],
    now: datetime,
) -> DayGating:
    """Recompute the whole gating record for a caregiver."""
    result = recalculate_gating(progress, control, overrides, now)
    return DayGating(
        caregiver_id=progress.caregiver_id,
        overrides=[o.model_copy() for o in overrides],
        **result.model_dump(),
    )
