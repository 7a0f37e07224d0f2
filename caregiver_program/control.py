"""
Admin actions on a caregiver's program.

Every accepted action is applied to a private copy of the caregiver's
progress/control/gating triple, the gate is recomputed, exactly one audit
entry is appended and the triple is committed in one step. A rejected
action writes nothing.
"""

import logging
import math
from collections.abc import Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from caregiver_program.auth import AdminIdentity
from caregiver_program.database import CaregiverLocks, ProgramStore
from caregiver_program.errors import (
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from caregiver_program.gating import build_gating, warn_if_inconsistent
from caregiver_program.models import (
    MAX_DELAY_HOURS,
    AdminAction,
    AdminActionType,
    DayOverride,
    ProgramState,
    ProgramStatus,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

_TERMINAL = (ProgramStatus.TERMINATED, ProgramStatus.COMPLETED)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_hour(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 <= value <= 23
    )


def parse_action(action: str) -> AdminActionType:
    try:
        return AdminActionType(action)
    except ValueError:
        raise ValidationError(
            f"No such action: {action}",
            invalid_fields=["action"],
            allowed_actions=[a.value for a in AdminActionType],
        ) from None


def _snapshot(state: ProgramState) -> dict[str, Any]:
    return {
        "status": state.control.status.value,
        "delay_hours": state.control.delay_hours,
    }


class ControlService:
    def __init__(
        self, store: ProgramStore, locks: CaregiverLocks, now_fn: NowFn
    ) -> None:
        self.store = store
        self.locks = locks
        self.now_fn = now_fn

    async def apply_action(
        self,
        caregiver_id: str,
        action: str,
        params: dict[str, Any],
        admin: AdminIdentity,
    ) -> tuple[ProgramState, AdminAction]:
        action_type = parse_action(action)
        self._validate_params(action_type, params)

        if self.store.get_caregiver(caregiver_id) is None:
            raise NotFoundError("Caregiver not found")

        async with self.locks.for_caregiver(caregiver_id):
            now = self.now_fn()
            state = self.store.load_program_state(caregiver_id)
            created = state is None
            if created:
                state = self.store.new_program_state(caregiver_id, now)

            before = _snapshot(state)
            extra = self._apply(action_type, state, params, admin, now)
            warn_if_inconsistent(state)

            entry = AdminAction(
                action=action_type,
                admin_id=admin.admin_id,
                admin_name=admin.admin_name,
                timestamp=now,
                reason=params.get("reason") or "",
                previous_value=before,
                new_value={**_snapshot(state), **extra},
            )
            state.control.admin_actions.append(entry)
            state.control.updated_at = now

            self.store.commit_program_state(state)

        if created:
            logger.info(
                "Created program records for caregiver %s", caregiver_id
            )
        logger.info(
            "Admin %s applied %s to caregiver %s",
            admin.admin_id,
            action_type.value,
            caregiver_id,
        )
        return state, entry

    def _validate_params(
        self, action: AdminActionType, params: dict[str, Any]
    ) -> None:
        if action is AdminActionType.MODIFY_DELAY:
            delay = params.get("delay_hours")
            if delay is None:
                raise ValidationError(
                    "delay_hours required for modify_delay action",
                    missing_fields=["delay_hours"],
                )
            if not _is_number(delay) or not 0 <= delay <= MAX_DELAY_HOURS:
                raise ValidationError(
                    "Valid delay_hours required for modify_delay action",
                    invalid_fields=["delay_hours"],
                )

        elif action is AdminActionType.FORCE_UNLOCK:
            day = params.get("force_unlock_day")
            if day is None:
                raise ValidationError(
                    "force_unlock_day required for force_unlock action",
                    missing_fields=["force_unlock_day"],
                )
            final_day = self.store.settings.final_day
            if (
                not isinstance(day, int)
                or isinstance(day, bool)
                or not 1 <= day <= final_day
            ):
                raise ValidationError(
                    f"force_unlock_day must be a day between 1 and "
                    f"{final_day}",
                    invalid_fields=["force_unlock_day"],
                )

        elif action is AdminActionType.MODIFY_SCHEDULE:
            self._validate_schedule(params)

    def _validate_schedule(self, params: dict[str, Any]) -> None:
        fields = ("skip_weekends", "allowed_start_hours", "timezone")
        if all(params.get(f) is None for f in fields):
            raise ValidationError(
                "modify_schedule needs at least one of skip_weekends, "
                "allowed_start_hours or timezone",
                missing_fields=list(fields),
            )

        invalid = []
        skip = params.get("skip_weekends")
        if skip is not None and not isinstance(skip, bool):
            invalid.append("skip_weekends")

        hours = params.get("allowed_start_hours")
        if hours is not None:
            start = hours.get("start") if isinstance(hours, dict) else None
            end = hours.get("end") if isinstance(hours, dict) else None
            if not (_is_hour(start) and _is_hour(end) and start <= end):
                invalid.append("allowed_start_hours")

        tz = params.get("timezone")
        if tz is not None:
            try:
                ZoneInfo(tz)
            except (ZoneInfoNotFoundError, TypeError, ValueError):
                invalid.append("timezone")

        if invalid:
            raise ValidationError(
                "Invalid schedule settings", invalid_fields=invalid
            )

    def _apply(
        self,
        action: AdminActionType,
        state: ProgramState,
        params: dict[str, Any],
        admin: AdminIdentity,
        now: datetime,
    ) -> dict[str, Any]:
        """
        Mutate the copy in place and return extra audit fields, if any.
        """
        progress, control = state.progress, state.control
        overrides = state.gating.overrides
        extra: dict[str, Any] = {}

        match action:
            case AdminActionType.PAUSE:
                self._require_status(action, state, ProgramStatus.ACTIVE)
                control.status = ProgramStatus.PAUSED

            case AdminActionType.RESUME:
                self._require_status(action, state, ProgramStatus.PAUSED)
                control.status = ProgramStatus.ACTIVE

            case AdminActionType.TERMINATE:
                if control.status in _TERMINAL:
                    self._conflict(action, state)
                control.status = ProgramStatus.TERMINATED

            case AdminActionType.MODIFY_DELAY:
                control.delay_hours = params["delay_hours"]

            case AdminActionType.MODIFY_SCHEDULE:
                settings = control.custom_settings
                if params.get("skip_weekends") is not None:
                    settings.skip_weekends = params["skip_weekends"]
                if params.get("allowed_start_hours") is not None:
                    hours = params["allowed_start_hours"]
                    settings.allowed_start_hours.start = hours["start"]
                    settings.allowed_start_hours.end = hours["end"]
                if params.get("timezone") is not None:
                    settings.timezone = params["timezone"]
                extra["custom_settings"] = settings.model_dump(mode="json")

            case AdminActionType.RESET_DAY:
                current_day = progress.current_day
                progress.completed_days = [
                    d for d in progress.completed_days if d.day != current_day
                ]
                progress.current_day = max(1, current_day)
                progress.is_completed = False
                progress.completed_at = None
                if control.status is ProgramStatus.COMPLETED:
                    control.status = ProgramStatus.ACTIVE
                extra["reset_day"] = current_day

            case AdminActionType.FORCE_UNLOCK:
                day = params["force_unlock_day"]
                if not any(o.day == day for o in overrides):
                    overrides.append(
                        DayOverride(
                            day=day,
                            unlocked_by=admin.admin_id,
                            unlocked_at=now,
                            reason=params.get("reason")
                            or "Admin force unlock",
                        )
                    )
                extra["force_unlock_day"] = day

            case AdminActionType.RESTART_PROGRAM:
                progress.current_day = 1
                progress.completed_days = []
                progress.is_completed = False
                progress.completed_at = None
                progress.started_at = now
                progress.last_activity_at = now
                control.status = ProgramStatus.ACTIVE
                overrides = []

        state.gating = build_gating(progress, control, overrides, now)
        return extra

    def _require_status(
        self,
        action: AdminActionType,
        state: ProgramState,
        required: ProgramStatus,
    ) -> None:
        if state.control.status is not required:
            self._conflict(action, state)

    def _conflict(self, action: AdminActionType, state: ProgramState) -> None:
        status = state.control.status.value
        logger.warning(
            "Rejected %s for caregiver %s with status %s",
            action.value,
            state.progress.caregiver_id,
            status,
        )
        raise StateConflictError(
            f"Cannot {action.value} program with status: {status}",
            status=status,
        )
