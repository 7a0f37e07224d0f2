from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from caregiver_program.auth import (
    load_admin,
    resolve_admin_id,
    store_token_resolver,
)
from caregiver_program.config import ProgramSettings
from caregiver_program.control import ControlService
from caregiver_program.database import (
    CaregiverLocks,
    InMemoryKeyValueDatabase,
    ProgramStore,
    Record,
)
from caregiver_program.errors import (
    NotFoundError,
    ProgramError,
    ValidationError,
)
from caregiver_program.progress import ProgressService

router = APIRouter()


class CompleteDayRequest(BaseModel):
    notes: str | None = None
    time_spent: float | None = None
    day: int | None = None


class BurdenAssessmentRequest(BaseModel):
    responses: dict[str, int]


class ProgramControlRequest(BaseModel):
    caregiver_id: str | None = None
    action: str | None = None
    admin_id: str | None = None
    admin_name: str | None = None
    reason: str | None = None
    delay_hours: Any = None
    force_unlock_day: Any = None
    skip_weekends: Any = None
    allowed_start_hours: Any = None
    timezone: Any = None


def _store(request: Request) -> ProgramStore:
    return request.app.state.store


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/caregivers/{caregiver_id}/program-state")
async def get_program_state(caregiver_id: str, request: Request) -> dict:
    service: ProgressService = request.app.state.progress_service
    state = await service.get_program_state(caregiver_id)
    return state.model_dump(mode="json")


@router.post("/caregivers/{caregiver_id}/complete-day")
async def complete_day(
    caregiver_id: str, body: CompleteDayRequest, request: Request
) -> dict:
    service: ProgressService = request.app.state.progress_service
    completion = await service.complete_day(
        caregiver_id,
        notes=body.notes,
        time_spent=body.time_spent,
        day=body.day,
    )
    return {
        "message": f"Day {completion.completed_day} completed successfully",
        **completion.model_dump(mode="json"),
    }


@router.post("/caregivers/{caregiver_id}/burden-assessment")
async def record_burden_assessment(
    caregiver_id: str, body: BurdenAssessmentRequest, request: Request
) -> dict:
    service: ProgressService = request.app.state.progress_service
    progress = await service.record_burden_assessment(
        caregiver_id, body.responses
    )
    return {
        "caregiver_id": caregiver_id,
        "burden_score": progress.burden_score,
        "burden_level": progress.burden_level.value,
    }


@router.get("/admin/program-control")
async def program_control_overview(request: Request) -> dict:
    service: ProgressService = request.app.state.progress_service
    return {
        "caregivers": [
            entry.model_dump(mode="json")
            for entry in service.program_control_overview()
        ]
    }


@router.get("/admin/program-control/{caregiver_id}/actions")
async def list_admin_actions(caregiver_id: str, request: Request) -> dict:
    store = _store(request)
    if store.get_caregiver(caregiver_id) is None:
        raise NotFoundError("Caregiver not found")
    state = store.load_program_state(caregiver_id)
    actions = state.control.admin_actions if state else []
    return {
        "caregiver_id": caregiver_id,
        "admin_actions": [a.model_dump(mode="json") for a in actions],
    }


@router.post("/admin/program-control")
@router.patch("/admin/program-control")
async def control_program(
    body: ProgramControlRequest,
    request: Request,
    authorization: str | None = Header(default=None),
) -> dict:
    store = _store(request)
    admin_id = resolve_admin_id(
        body.admin_id, authorization, request.app.state.token_resolver
    )

    missing = [
        name
        for name, value in (
            ("caregiver_id", body.caregiver_id),
            ("action", body.action),
            ("admin_id", admin_id),
        )
        if not value
    ]
    if missing:
        raise ValidationError(
            "Missing required fields", missing_fields=missing
        )

    admin = load_admin(store, admin_id, body.admin_name)

    service: ControlService = request.app.state.control_service
    state, entry = await service.apply_action(
        body.caregiver_id,
        body.action,
        body.model_dump(
            exclude={"caregiver_id", "action", "admin_id", "admin_name"}
        ),
        admin,
    )
    return {
        "message": f"Action {body.action} completed successfully",
        **state.model_dump(mode="json"),
        "admin_action": entry.model_dump(mode="json"),
    }


async def _program_error_handler(
    request: Request, exc: ProgramError
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: ProgramSettings | None = None) -> FastAPI:
    app = FastAPI()
    settings = settings or ProgramSettings()
    db: InMemoryKeyValueDatabase[str, Record] = InMemoryKeyValueDatabase()
    store = ProgramStore(db, settings)
    locks = CaregiverLocks()

    app.state.settings = settings
    app.state.database = db
    app.state.store = store
    app.state.locks = locks

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.token_resolver = store_token_resolver(store)

    def now() -> datetime:
        return app.state.now_fn()

    app.state.progress_service = ProgressService(store, locks, now_fn=now)
    app.state.control_service = ControlService(store, locks, now_fn=now)

    app.add_exception_handler(ProgramError, _program_error_handler)
    app.include_router(router)
    return app
