from __future__ import annotations

from pydantic import BaseModel


class UserInfo(BaseModel):
    """Caller identity as established by the upstream authenticator."""

    id: str
    organization_id: str | None = None
