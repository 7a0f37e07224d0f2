from datetime import UTC, datetime

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from caregiver_program.api import create_app
from caregiver_program.database import InMemoryKeyValueDatabase, Record
from caregiver_program.models import Admin, Caregiver


@pytest_asyncio.fixture
async def client():
    app = create_app()
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest_asyncio.fixture
async def setup_test_data(client: AsyncClient):
    app = client._transport.app
    db: InMemoryKeyValueDatabase[str, Record] = app.state.database

    alice = Caregiver(
        id="alice-id",
        name="Alice Ongwele",
        email="alice@example.com",
        is_assigned=True,
        assigned_patient_id="patient-1",
        assigned_at=datetime(2025, 7, 1, 9, 0, 0, tzinfo=UTC),
    )
    wei = Caregiver(
        id="wei-id",
        name="Wei Yan",
        email="wei@example.com",
        is_assigned=True,
        assigned_patient_id="patient-2",
    )
    barry = Caregiver(
        id="barry-id",
        name="Barry Kozumikov",
        email="barry@example.com",
    )
    admin = Admin(id="admin-1", name="Dana Admin", token="secret-token")

    db.put(f"caregiver:{alice.id}", alice)
    db.put(f"caregiver:{wei.id}", wei)
    db.put(f"caregiver:{barry.id}", barry)
    db.put(f"admin:{admin.id}", admin)
