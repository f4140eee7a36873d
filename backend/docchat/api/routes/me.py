"""
Current-user API route.

Returns identity, roles, structured permissions and a short-lived access
token. The token is served here, out of band, because embedding it in the
session cookie would exceed browser cookie size limits.
"""

import logging

from fastapi import APIRouter, Request

from docchat.api.schemas.auth import MeResponse, UserInfo
from docchat.auth.interceptor import AuthContext, with_auth
from docchat.platform.oidc_client import OIDCError, decode_claims, group_permissions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["me"])


@router.get("/me", response_model=MeResponse)
@with_auth([])
async def get_me(request: Request, auth: AuthContext):
    """Resolved caller data for client-side permission checks."""
    permissions = {}
    oidc_client = request.app.state.oidc_client
    if oidc_client is not None:
        try:
            permissions = group_permissions(
                await oidc_client.fetch_permissions(auth.access_token)
            )
        except OIDCError as e:
            logger.warning(
                "Permission lookup failed; returning no permissions",
                extra={"subject": auth.subject, "error": str(e)},
            )

    id_claims = decode_claims(auth.id_token)
    return MeResponse(
        user=UserInfo(
            id=auth.subject,
            name=id_claims.get("name") or id_claims.get("preferred_username"),
            email=id_claims.get("email"),
            brand=auth.brand,
            roles=list(auth.roles),
            permissions=permissions,
        ),
        access_token=auth.access_token,
        expires_at=auth.expires_at,
    )
