"""
Auth and current-user schemas.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class UserInfo(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    brand: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    permissions: Dict[str, List[str]] = Field(default_factory=dict)


class MeResponse(BaseModel):
    """
    Current user plus a short-lived access token for client-side calls.

    The access token is served here rather than embedded in the session
    cookie, which would exceed browser cookie size limits.
    """
    user: UserInfo
    access_token: str
    expires_at: int


class RefreshRequest(BaseModel):
    """
    Why the client is asking.

    manual: user or app asked explicitly (always refreshes)
    periodic: client-side timer (refreshes only near expiry)
    unauthorized: a protected call just answered 401
    """
    trigger: Literal["manual", "periodic", "unauthorized"] = "manual"


class RefreshResponse(BaseModel):
    """
    session_token is only returned to bearer-token callers; browser
    callers get the renewed session as a cookie.
    """
    status: str
    expires_at: Optional[int] = None
    session_expires_at: Optional[int] = None
    session_token: Optional[str] = None
    should_prompt: bool = False


class VisibilityRequest(BaseModel):
    visible: bool


class VisibilityResponse(BaseModel):
    visible: bool
    outcome: Optional[str] = None
    timer_running: bool = False


class SignOutResponse(BaseModel):
    status: str = "ok"
    logout_url: Optional[str] = None
