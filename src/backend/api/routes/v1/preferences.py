"""User preference endpoints (v1)."""

from __future__ import annotations

from fastapi import APIRouter

from api.dependencies import CurrentUser, Preferences
from models.conversation_models import UserPreferences
from models.schemas.preferences import UpdatePreferencesRequest

router = APIRouter()


@router.get(
    "/preferences",
    response_model=UserPreferences,
    summary="Get preferences",
    description="Stored preferences for the caller, or defaults if none are stored.",
)
async def get_preferences(user: CurrentUser, preferences: Preferences) -> UserPreferences:
    return await preferences.get_preferences(user.id)


@router.put(
    "/preferences",
    response_model=UserPreferences,
    summary="Update preferences",
    description="Merge the given fields into the caller's preferences.",
)
async def update_preferences(
    request: UpdatePreferencesRequest,
    user: CurrentUser,
    preferences: Preferences,
) -> UserPreferences:
    return await preferences.update_preferences(user.id, request.to_updates())
