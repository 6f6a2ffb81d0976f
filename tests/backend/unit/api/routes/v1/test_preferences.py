from unittest.mock import AsyncMock, MagicMock

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.dependencies import get_preferences_service
from api.middleware.auth import get_current_user
from api.middleware.exception_handlers import register_exception_handlers
from api.routes.v1.preferences import router
from models.api_models import UserInfo
from models.conversation_models import UserPreferences


@pytest.fixture
def mock_preferences() -> MagicMock:
    service = MagicMock()
    service.get_preferences = AsyncMock(return_value=UserPreferences(user_id="user-1"))
    service.update_preferences = AsyncMock(return_value=UserPreferences(user_id="user-1", theme="dark"))
    return service


@pytest.fixture
def client(mock_preferences: MagicMock) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")
    app.dependency_overrides[get_preferences_service] = lambda: mock_preferences
    app.dependency_overrides[get_current_user] = lambda: UserInfo(id="user-1")
    return TestClient(app)


def test_get_preferences(client: TestClient, mock_preferences: MagicMock) -> None:
    response = client.get("/api/v1/preferences")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "user-1"
    assert data["theme"] == "light"
    mock_preferences.get_preferences.assert_awaited_once_with("user-1")


def test_update_preferences_passes_only_given_fields(client: TestClient, mock_preferences: MagicMock) -> None:
    response = client.put("/api/v1/preferences", json={"theme": "dark", "ai": {"show_token_usage": True}})

    assert response.status_code == 200
    assert response.json()["theme"] == "dark"
    mock_preferences.update_preferences.assert_awaited_once_with(
        "user-1", {"theme": "dark", "ai": {"show_token_usage": True}}
    )


def test_update_preferences_rejects_invalid_values(client: TestClient, mock_preferences: MagicMock) -> None:
    response = client.put("/api/v1/preferences", json={"ai": {"response_style": "verbose"}})

    assert response.status_code == 422
    mock_preferences.update_preferences.assert_not_awaited()
