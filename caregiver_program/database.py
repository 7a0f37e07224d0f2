import asyncio
from collections.abc import Mapping, MutableMapping
from datetime import datetime
from typing import TypeVar

from caregiver_program.config import ProgramSettings
from caregiver_program.models import (
    Admin,
    AllowedStartHours,
    Caregiver,
    CustomSettings,
    DayGating,
    ProgramControl,
    ProgramProgress,
    ProgramState,
)

K = TypeVar("K")
V = TypeVar("V")

Record = (
    Caregiver | Admin | ProgramProgress | ProgramControl | DayGating
)


class InMemoryKeyValueDatabase[K, V]:
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def put_many(self, items: Mapping[K, V]) -> None:
        """
        Write several keys in a single step. Readers never observe only
        part of the batch.
        """
        self._store.update(items)

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def all(self) -> list[V]:
        return list(self._store.values())

    def __len__(self) -> int:
        return len(self._store)


class CaregiverLocks:
    """
    One asyncio lock per caregiver. Mutations of the same caregiver queue up
    behind each other; different caregivers never share a lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_caregiver(self, caregiver_id: str) -> asyncio.Lock:
        return self._locks.setdefault(caregiver_id, asyncio.Lock())

    def __len__(self) -> int:
        return len(self._locks)


class ProgramStore:
    """
    Keyed access to caregivers, admins and program state.

    Program state is handed out as deep copies, so a service can mutate it
    freely and either commit the whole triple or drop it.
    """

    def __init__(
        self,
        db: InMemoryKeyValueDatabase[str, Record],
        settings: ProgramSettings,
    ) -> None:
        self.db = db
        self.settings = settings

    def get_caregiver(self, caregiver_id: str) -> Caregiver | None:
        caregiver = self.db.get(f"caregiver:{caregiver_id}")
        return caregiver if isinstance(caregiver, Caregiver) else None

    def assigned_caregivers(self) -> list[Caregiver]:
        return sorted(
            (
                c
                for c in self.db.all()
                if isinstance(c, Caregiver) and c.is_assigned
            ),
            key=lambda c: c.id,
        )

    def get_admin(self, admin_id: str) -> Admin | None:
        admin = self.db.get(f"admin:{admin_id}")
        return admin if isinstance(admin, Admin) else None

    def find_admin_by_token(self, token: str) -> Admin | None:
        return next(
            (
                a
                for a in self.db.all()
                if isinstance(a, Admin) and a.token is not None
                and a.token == token
            ),
            None,
        )

    def load_program_state(self, caregiver_id: str) -> ProgramState | None:
        progress = self.db.get(f"progress:{caregiver_id}")
        control = self.db.get(f"control:{caregiver_id}")
        gating = self.db.get(f"gating:{caregiver_id}")
        if not isinstance(progress, ProgramProgress):
            return None

        state = ProgramState(
            progress=progress,
            control=(
                control
                if isinstance(control, ProgramControl)
                else self.default_control(caregiver_id, progress.started_at)
            ),
            gating=(
                gating
                if isinstance(gating, DayGating)
                else DayGating(caregiver_id=caregiver_id)
            ),
        )
        return state.model_copy(deep=True)

    def default_control(
        self, caregiver_id: str, now: datetime | None
    ) -> ProgramControl:
        return ProgramControl(
            caregiver_id=caregiver_id,
            delay_hours=self.settings.default_delay_hours,
            custom_settings=CustomSettings(
                allowed_start_hours=AllowedStartHours(
                    start=self.settings.default_allowed_start_hour,
                    end=self.settings.default_allowed_end_hour,
                ),
                timezone=self.settings.default_timezone,
            ),
            created_at=now,
            updated_at=now,
        )

    def new_program_state(
        self, caregiver_id: str, now: datetime
    ) -> ProgramState:
        return ProgramState(
            progress=ProgramProgress(
                caregiver_id=caregiver_id,
                started_at=now,
                last_activity_at=now,
            ),
            control=self.default_control(caregiver_id, now),
            gating=DayGating(caregiver_id=caregiver_id, next_available_at=now),
        )

    def commit_program_state(self, state: ProgramState) -> None:
        caregiver_id = state.progress.caregiver_id
        self.db.put_many(
            {
                f"progress:{caregiver_id}": state.progress,
                f"control:{caregiver_id}": state.control,
                f"gating:{caregiver_id}": state.gating,
            }
        )
