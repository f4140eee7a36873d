"""
Token lifecycle and request authorization.

Modules:
- token_store: Redis credential store (one TokenSet per subject)
- session: signed session proof
- refresh: server-side refresh of stored token sets
- coordinator: per-subject refresh state machine
- interceptor: with_auth / protect route gate
"""

from docchat.auth.interceptor import AuthContext, Role, protect, with_auth
from docchat.auth.token_store import CredentialStore, TokenSet

__all__ = [
    "AuthContext",
    "Role",
    "protect",
    "with_auth",
    "CredentialStore",
    "TokenSet",
]
