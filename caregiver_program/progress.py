import logging
import math
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel

from caregiver_program.database import CaregiverLocks, ProgramStore
from caregiver_program.errors import (
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from caregiver_program.gating import build_gating, warn_if_inconsistent
from caregiver_program.models import (
    BurdenLevel,
    Caregiver,
    CompletedDay,
    DayGating,
    ProgramProgress,
    ProgramState,
    ProgramStatus,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

BURDEN_ITEM_MAX = 4


class DayCompletion(BaseModel):
    progress: ProgramProgress
    gating: DayGating
    completed_day: int
    next_day_available_at: datetime | None
    is_completed: bool


class CaregiverProgramOverview(BaseModel):
    caregiver_id: str
    caregiver_name: str
    caregiver_email: str | None
    assigned_patient_id: str | None
    assigned_at: datetime | None
    state: ProgramState | None


def burden_level_for_score(total_score: int) -> BurdenLevel:
    if total_score <= 10:
        return BurdenLevel.MILD
    if total_score <= 20:
        return BurdenLevel.MODERATE
    return BurdenLevel.SEVERE


class ProgressService:
    """
    Caregiver-facing reads and writes of program progress.
    """

    def __init__(
        self, store: ProgramStore, locks: CaregiverLocks, now_fn: NowFn
    ) -> None:
        self.store = store
        self.locks = locks
        self.now_fn = now_fn

    def _caregiver(self, caregiver_id: str) -> Caregiver:
        caregiver = self.store.get_caregiver(caregiver_id)
        if caregiver is None:
            raise NotFoundError("Caregiver not found")
        return caregiver

    async def get_program_state(self, caregiver_id: str) -> ProgramState:
        """
        Return the caregiver's program with a freshly computed gate,
        creating day-1 records on first use.
        """
        self._caregiver(caregiver_id)

        async with self.locks.for_caregiver(caregiver_id):
            now = self.now_fn()
            state = self.store.load_program_state(caregiver_id)
            if state is None:
                state = self.store.new_program_state(caregiver_id, now)
                logger.info(
                    "Created program records for caregiver %s", caregiver_id
                )

            state.gating = build_gating(
                state.progress, state.control, state.gating.overrides, now
            )
            warn_if_inconsistent(state)
            self.store.commit_program_state(state)
        return state

    async def complete_day(
        self,
        caregiver_id: str,
        notes: str | None = None,
        time_spent: float | None = None,
        day: int | None = None,
    ) -> DayCompletion:
        caregiver = self._caregiver(caregiver_id)
        if not caregiver.is_assigned:
            raise StateConflictError("No patient assigned to caregiver")
        if time_spent is not None and (
            not math.isfinite(time_spent) or time_spent < 0
        ):
            raise ValidationError(
                "time_spent must be a non-negative number of minutes",
                invalid_fields=["time_spent"],
            )

        final_day = self.store.settings.final_day

        async with self.locks.for_caregiver(caregiver_id):
            now = self.now_fn()
            state = self.store.load_program_state(caregiver_id)
            if state is None:
                raise NotFoundError("Program not initialized")

            progress, control = state.progress, state.control
            if control.status is not ProgramStatus.ACTIVE:
                raise StateConflictError(
                    f"Program is currently {control.status.value}",
                    status=control.status.value,
                )

            gating = build_gating(
                progress, control, state.gating.overrides, now
            )
            if not gating.can_start_current_day:
                state.gating = gating
                warn_if_inconsistent(state)
                raise StateConflictError(
                    "Day not available for completion",
                    blocked_reason=gating.blocked_reason.value,
                    next_available_at=(
                        gating.next_available_at.isoformat()
                        if gating.next_available_at
                        else None
                    ),
                )

            current_day = progress.current_day
            target_day = current_day if day is None else day
            if progress.completion_for(target_day) is not None:
                raise StateConflictError(
                    f"Day {target_day} already completed",
                    current_day=current_day,
                )
            if target_day != current_day:
                raise StateConflictError(
                    f"Day {target_day} is not the current day",
                    current_day=current_day,
                )

            time_spent = time_spent or 0
            progress.completed_days.append(
                CompletedDay(
                    day=current_day,
                    completed_at=now,
                    notes=notes or "",
                    time_spent=time_spent,
                )
            )
            progress.total_time_spent += time_spent
            progress.last_activity_at = now

            if current_day >= final_day:
                progress.is_completed = True
                progress.completed_at = now
                control.status = ProgramStatus.COMPLETED
                control.updated_at = now
            else:
                progress.current_day = current_day + 1

            state.gating = build_gating(
                progress, control, state.gating.overrides, now
            )
            self.store.commit_program_state(state)

        logger.info("Caregiver %s completed day %s", caregiver_id, current_day)
        return DayCompletion(
            progress=state.progress,
            gating=state.gating,
            completed_day=current_day,
            next_day_available_at=(
                None if progress.is_completed
                else state.gating.next_available_at
            ),
            is_completed=progress.is_completed,
        )

    async def record_burden_assessment(
        self, caregiver_id: str, responses: dict[str, int]
    ) -> ProgramProgress:
        self._caregiver(caregiver_id)
        if not responses:
            raise ValidationError(
                "Burden assessment responses required",
                missing_fields=["responses"],
            )
        invalid = [
            key
            for key, score in responses.items()
            if isinstance(score, bool)
            or not isinstance(score, int)
            or not 0 <= score <= BURDEN_ITEM_MAX
        ]
        if invalid:
            raise ValidationError(
                f"Responses must be scores between 0 and {BURDEN_ITEM_MAX}",
                invalid_fields=invalid,
            )

        total = sum(responses.values())
        async with self.locks.for_caregiver(caregiver_id):
            now = self.now_fn()
            state = self.store.load_program_state(caregiver_id)
            if state is None:
                state = self.store.new_program_state(caregiver_id, now)
                logger.info(
                    "Created program records for caregiver %s", caregiver_id
                )

            state.progress.burden_score = total
            state.progress.burden_level = burden_level_for_score(total)
            state.progress.last_activity_at = now
            self.store.commit_program_state(state)

        return state.progress

    def program_control_overview(self) -> list[CaregiverProgramOverview]:
        """
        Every assigned caregiver with their stored program. Gates are
        recomputed for display only, nothing is written.
        """
        now = self.now_fn()
        overview = []
        for caregiver in self.store.assigned_caregivers():
            state = self.store.load_program_state(caregiver.id)
            if state is not None:
                state.gating = build_gating(
                    state.progress, state.control, state.gating.overrides, now
                )
            overview.append(
                CaregiverProgramOverview(
                    caregiver_id=caregiver.id,
                    caregiver_name=caregiver.name,
                    caregiver_email=caregiver.email,
                    assigned_patient_id=caregiver.assigned_patient_id,
                    assigned_at=caregiver.assigned_at,
                    state=state,
                )
            )
        return overview
