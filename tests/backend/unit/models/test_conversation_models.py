from __future__ import annotations

import re

from datetime import UTC, datetime, timedelta

import pytest

from pydantic import ValidationError

from models.conversation_models import (
    Conversation,
    MessageRole,
    ResponseChunk,
    ThreadBinding,
    generate_thread_id,
)
from models.error_models import ErrorCode, ErrorResponse, get_status_code
from models.schemas.conversations import ConversationResponse, ResumeConversationResponse

NOW = datetime(2025, 1, 15, 10, 30, tzinfo=UTC)


class TestThreadBinding:
    def test_create_uses_default_ttl(self) -> None:
        binding = ThreadBinding.create("conv-1", "thread_1", now=NOW)

        assert binding.created_at == NOW
        assert binding.expires_at == NOW + timedelta(hours=24)
        assert binding.is_active is True

    def test_expiry_boundary(self) -> None:
        binding = ThreadBinding.create("conv-1", "thread_1", now=NOW, ttl=timedelta(hours=1))

        assert binding.is_valid(NOW + timedelta(minutes=59)) is True
        assert binding.is_expired(NOW + timedelta(hours=1)) is True
        assert binding.is_valid(NOW + timedelta(hours=1)) is False

    def test_inactive_binding_is_not_valid(self) -> None:
        binding = ThreadBinding.create("conv-1", "thread_1", now=NOW).model_copy(update={"is_active": False})

        assert binding.is_expired(NOW) is False
        assert binding.is_valid(NOW) is False

    def test_frozen(self) -> None:
        binding = ThreadBinding.create("conv-1", "thread_1", now=NOW)

        with pytest.raises(ValidationError):
            binding.thread_id = "other"  # type: ignore[misc]

    def test_json_round_trip_keeps_timezone(self) -> None:
        binding = ThreadBinding.create("conv-1", "thread_1", now=NOW)

        restored = ThreadBinding.model_validate_json(binding.model_dump_json())

        assert restored == binding


def test_generate_thread_id_format() -> None:
    thread_id = generate_thread_id("conv-1", NOW)

    assert re.fullmatch(r"thread_conv-1_20250115103000_[0-9a-f]{8}", thread_id)
    assert generate_thread_id("conv-1", NOW) != thread_id


class TestConversation:
    def test_defaults(self) -> None:
        conversation = Conversation(user_id="user-1")

        assert conversation.title == "New Conversation"
        assert conversation.message_count == 0
        assert conversation.thread_binding is None
        assert conversation.created_at.tzinfo is not None

    def test_ownership(self) -> None:
        conversation = Conversation(user_id="user-1")

        assert conversation.is_owned_by("user-1") is True
        assert conversation.is_owned_by("user-2") is False
        assert conversation.model_copy(update={"is_deleted": True}).is_owned_by("user-1") is False

    def test_response_reports_active_thread(self) -> None:
        live = ThreadBinding.create("conv-1", "thread_1")
        expired = ThreadBinding.create("conv-1", "thread_1", now=NOW)

        assert ConversationResponse.from_conversation(
            Conversation(user_id="user-1", thread_binding=live)
        ).has_active_thread is True
        assert ConversationResponse.from_conversation(
            Conversation(user_id="user-1", thread_binding=expired)
        ).has_active_thread is False


def test_message_role_values() -> None:
    assert [r.value for r in MessageRole] == ["user", "assistant", "system"]


def test_response_chunk_failure() -> None:
    chunk = ResponseChunk.failure("Failed to save message", message_id="m1", content="partial")

    assert chunk.is_complete is True
    assert chunk.error == "Failed to save message"
    assert chunk.content == "partial"
    assert chunk.was_saved is None


def test_resume_response_from_binding() -> None:
    assert ResumeConversationResponse.from_binding(None).resumed is False

    response = ResumeConversationResponse.from_binding(ThreadBinding.create("conv-1", "thread_1", now=NOW))
    assert response.resumed is True
    assert response.thread_id == "thread_1"


class TestErrorModels:
    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (ErrorCode.AUTH_REQUIRED, 401),
            (ErrorCode.CONVERSATION_NOT_FOUND, 404),
            (ErrorCode.VALIDATION_ERROR, 422),
            (ErrorCode.DATABASE_TIMEOUT, 504),
            (ErrorCode.EXTERNAL_RATE_LIMITED, 429),
            (ErrorCode.AGENT_NOT_CONFIGURED, 503),
            (ErrorCode.INTERNAL_UNEXPECTED, 500),
        ],
    )
    def test_status_codes(self, code: ErrorCode, status: int) -> None:
        assert get_status_code(code) == status

    def test_envelope_hides_debug_unless_requested(self) -> None:
        response = ErrorResponse(code=ErrorCode.INTERNAL_ERROR, message="boom", debug={"trace": "x"})

        assert "debug" not in response.to_dict()["error"]
        assert response.to_dict(include_debug=True)["error"]["debug"] == {"trace": "x"}
        assert "request_id" not in response.to_dict()["error"]
