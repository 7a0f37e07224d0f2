import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from freezegun import freeze_time
from httpx import AsyncClient

from caregiver_program.database import InMemoryKeyValueDatabase, Record
from caregiver_program.models import ProgramProgress


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


async def _admin(client: AsyncClient, caregiver_id: str, action: str, **kw):
    resp = await client.post(
        "/admin/program-control",
        json={
            "caregiver_id": caregiver_id,
            "action": action,
            "admin_id": "admin-1",
            **kw,
        },
    )
    _p(f"admin {action} -> status={resp.status_code}, body={resp.json()}")
    return resp


async def _complete(client: AsyncClient, caregiver_id: str, **kw):
    resp = await client.post(
        f"/caregivers/{caregiver_id}/complete-day", json=kw
    )
    _p(f"complete-day -> status={resp.status_code}, body={resp.json()}")
    return resp


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_program_state_unknown_caregiver(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("program-state returns 404 for unknown caregiver")
    resp = await client.get("/caregivers/nobody/program-state")
    assert resp.status_code == 404
    assert "not found" in resp.json()["detail"].lower()

    db: InMemoryKeyValueDatabase[str, Record] = (
        client._transport.app.state.database
    )
    assert db.get("progress:nobody") is None


@pytest.mark.asyncio
async def test_new_caregiver_starts_on_open_day_one(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("first program-state call creates day 1, open")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        resp = await client.get("/caregivers/alice-id/program-state")
        _p(f"GET program-state -> {resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["progress"]["current_day"] == 1
    assert data["progress"]["completed_days"] == []
    assert data["control"]["status"] == "active"
    assert data["control"]["delay_hours"] == 24
    assert data["gating"]["can_start_current_day"] is True
    assert data["gating"]["blocked_reason"] is None

    db: InMemoryKeyValueDatabase[str, Record] = (
        client._transport.app.state.database
    )
    assert isinstance(db.get("progress:alice-id"), ProgramProgress)
    assert db.get("control:alice-id") is not None
    assert db.get("gating:alice-id") is not None


@pytest.mark.asyncio
async def test_completing_day_one_starts_delay(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("day 1 completion closes gate for 24h, then it reopens")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True) as frozen:
        t = datetime.now(UTC)
        await client.get("/caregivers/alice-id/program-state")

        resp = await _complete(
            client, "alice-id", notes="watched video", time_spent=25
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["completed_day"] == 1
        assert data["is_completed"] is False
        assert data["progress"]["current_day"] == 2
        assert data["progress"]["total_time_spent"] == 25
        assert data["gating"]["can_start_current_day"] is False
        assert data["gating"]["blocked_reason"] == "time_delay"
        assert _ts(data["next_day_available_at"]) == t + timedelta(hours=24)

        blocked = await _complete(client, "alice-id")
        assert blocked.status_code == 409
        assert blocked.json()["blocked_reason"] == "time_delay"

        frozen.tick(delta=timedelta(hours=24, seconds=1))
        resp = await client.get("/caregivers/alice-id/program-state")
        _p(f"GET program-state at T+24h+1s -> {resp.json()['gating']}")
        assert resp.json()["gating"]["can_start_current_day"] is True
        assert resp.json()["gating"]["blocked_reason"] is None

        resp = await _complete(client, "alice-id", time_spent=10)
        assert resp.status_code == 200
        assert resp.json()["progress"]["current_day"] == 3
        assert resp.json()["progress"]["total_time_spent"] == 35


@pytest.mark.asyncio
async def test_complete_day_rejects_unassigned_caregiver(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("complete-day requires an assigned patient")
    await client.get("/caregivers/barry-id/program-state")
    resp = await _complete(client, "barry-id")
    assert resp.status_code == 409
    assert "no patient assigned" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_complete_day_requires_initialized_program(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("complete-day before any program state exists")
    resp = await _complete(client, "wei-id")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Program not initialized"


@pytest.mark.asyncio
async def test_complete_day_rejects_negative_time(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("negative time_spent is a validation error")
    await client.get("/caregivers/alice-id/program-state")
    resp = await _complete(client, "alice-id", time_spent=-5)
    assert resp.status_code == 400
    assert resp.json()["invalid_fields"] == ["time_spent"]


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity"])
async def test_complete_day_rejects_non_finite_time(
    client: AsyncClient, setup_test_data, raw
) -> None:
    _banner(f"time_spent={raw} is a validation error")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True) as frozen:
        await client.get("/caregivers/alice-id/program-state")
        first = await _complete(client, "alice-id", time_spent=20)
        assert first.status_code == 200
        frozen.tick(delta=timedelta(hours=25))

        resp = await client.post(
            "/caregivers/alice-id/complete-day",
            content=f'{{"time_spent": {raw}}}',
            headers={"Content-Type": "application/json"},
        )
        _p(f"{raw} -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 400
        assert resp.json()["invalid_fields"] == ["time_spent"]

        state = await client.get("/caregivers/alice-id/program-state")
        assert state.status_code == 200
        progress = state.json()["progress"]
        assert progress["total_time_spent"] == 20
        assert progress["current_day"] == 2
        assert [d["day"] for d in progress["completed_days"]] == [1]

        ok = await _complete(client, "alice-id", time_spent=5)
        assert ok.status_code == 200
        assert ok.json()["progress"]["total_time_spent"] == 25


@pytest.mark.asyncio
async def test_concurrent_completions_advance_only_once(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("race: two completions of day 1 -> only one advances")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        await client.get("/caregivers/alice-id/program-state")
        await _admin(client, "alice-id", "modify_delay", delay_hours=0)

        r1, r2 = await asyncio.gather(
            _complete(client, "alice-id", day=1, time_spent=15),
            _complete(client, "alice-id", day=1, time_spent=15),
        )

        statuses = sorted([r1.status_code, r2.status_code])
        assert statuses == [200, 409]
        rejected = r1 if r1.status_code == 409 else r2
        assert rejected.json()["detail"] == "Day 1 already completed"

        state = (await client.get("/caregivers/alice-id/program-state")).json()
        assert state["progress"]["current_day"] == 2
        assert [d["day"] for d in state["progress"]["completed_days"]] == [1]
        assert state["progress"]["total_time_spent"] == 15


@pytest.mark.asyncio
async def test_concurrent_completions_without_day_hit_the_gate(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("race: second completion sees the new day's delay")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        await client.get("/caregivers/alice-id/program-state")

        r1, r2 = await asyncio.gather(
            _complete(client, "alice-id"),
            _complete(client, "alice-id"),
        )

        assert sorted([r1.status_code, r2.status_code]) == [200, 409]
        state = (await client.get("/caregivers/alice-id/program-state")).json()
        assert state["progress"]["current_day"] == 2


@pytest.mark.asyncio
async def test_expected_day_must_be_current(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("completing a future day is rejected")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        await client.get("/caregivers/alice-id/program-state")
        resp = await _complete(client, "alice-id", day=3)
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Day 3 is not the current day"
        assert resp.json()["current_day"] == 1


@pytest.mark.asyncio
async def test_final_day_completes_program(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("completing day 10 finishes the program")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        await client.get("/caregivers/alice-id/program-state")
        await _admin(client, "alice-id", "modify_delay", delay_hours=0)

        for day in range(1, 11):
            resp = await _complete(client, "alice-id", time_spent=5)
            assert resp.status_code == 200
            assert resp.json()["completed_day"] == day

        data = resp.json()
        assert data["is_completed"] is True
        assert data["next_day_available_at"] is None
        assert data["progress"]["current_day"] == 10
        assert data["progress"]["completed_at"] is not None
        assert data["progress"]["total_time_spent"] == 50

        state = (await client.get("/caregivers/alice-id/program-state")).json()
        assert state["control"]["status"] == "completed"
        # completion is not an admin action
        assert len(state["control"]["admin_actions"]) == 1

        resp = await _complete(client, "alice-id")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Program is currently completed"
        assert resp.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_paused_program_rejects_completion(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("complete-day while paused")
    with freeze_time("2025-07-02 10:00:00", real_asyncio=True):
        await client.get("/caregivers/alice-id/program-state")
        await _admin(client, "alice-id", "pause", reason="patient in hospital")

        resp = await _complete(client, "alice-id")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Program is currently paused"


@pytest.mark.asyncio
async def test_burden_assessment_maps_score_to_level(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("burden assessment total -> level")
    scores = [2, 2, 2, 2, 2, 1, 1]
    responses = {f"q{i}": score for i, score in enumerate(scores)}
    resp = await client.post(
        "/caregivers/alice-id/burden-assessment",
        json={"responses": responses},
    )
    _p(f"burden-assessment -> {resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["burden_score"] == 12
    assert resp.json()["burden_level"] == "moderate"

    state = (await client.get("/caregivers/alice-id/program-state")).json()
    assert state["progress"]["burden_level"] == "moderate"


@pytest.mark.asyncio
async def test_burden_assessment_rejects_out_of_range_scores(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("burden item scores must be 0..4")
    resp = await client.post(
        "/caregivers/alice-id/burden-assessment",
        json={"responses": {"q1": 3, "q2": 9}},
    )
    assert resp.status_code == 400
    assert resp.json()["invalid_fields"] == ["q2"]
