# tests/test_modern_api.py
import pytest
from httpx import ASGITransport, AsyncClient

from clinic_scheduler.database import get_db
from clinic_scheduler.dependencies import get_notifier
from clinic_scheduler.main import app


@pytest.fixture
async def async_client(session_factory, notifier, seed):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_create_patient_modern(async_client: AsyncClient, auth_headers):
    response = await async_client.post(
        "/api/v1/patients",
        json={
            "full_name": "John Doe",
            "phone": "+1234567890",
            "email": "john@example.com"
        },
        headers=auth_headers,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["full_name"] == "John Doe"
    assert data["phone"] == "+1234567890"


@pytest.mark.asyncio
async def test_list_services_modern(async_client: AsyncClient, auth_headers):
    response = await async_client.get("/api/v1/services", headers=auth_headers)
    assert response.status_code == 200
    assert {s["name_en"] for s in response.json()} == {"Facial", "Laser"}
