# classes/auth.py

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from classes.errors import AuthError
from classes.google_helpers import ADMIN_EMAILS, TRIGGER_AUDIENCE

logger = logging.getLogger("craft_backend")

TokenVerifier = Callable[[str], dict[str, Any]]


@dataclass(frozen=True)
class CallerIdentity:
    uid: str
    email: Optional[str] = None
    is_admin: bool = False


def verify_google_id_token(token: str) -> dict[str, Any]:
    """Verifies signature, expiry and audience of a Google-issued ID token."""
    return id_token.verify_oauth2_token(token, google_requests.Request(), audience=TRIGGER_AUDIENCE)


class TriggerAuthenticator:
    """
    Resolves a bearer token into a CallerIdentity.

    A caller is privileged when its verified email is listed in ADMIN_EMAILS
    or the token carries an `admin: true` claim.
    """

    def __init__(
        self,
        verifier: TokenVerifier = verify_google_id_token,
        admin_emails: Optional[Iterable[str]] = None,
    ):
        self.verifier = verifier
        self.admin_emails = {e.lower() for e in (admin_emails if admin_emails is not None else ADMIN_EMAILS)}

    def identify(self, authorization: Optional[str]) -> CallerIdentity:
        token = self._bearer(authorization)
        try:
            claims = self.verifier(token)
        except ValueError as e:
            # google-auth raises ValueError for bad signature / audience / expiry
            raise AuthError(f"Invalid token: {e}", status_code=401) from e

        uid = str(claims.get("sub") or claims.get("uid") or "")
        if not uid:
            raise AuthError("Token has no subject", status_code=401)

        email = claims.get("email")
        email_ok = bool(email) and claims.get("email_verified", True) is not False
        is_admin = bool(claims.get("admin")) or (email_ok and email.lower() in self.admin_emails)
        return CallerIdentity(uid=uid, email=email, is_admin=is_admin)

    def _bearer(self, authorization: Optional[str]) -> str:
        if not authorization:
            raise AuthError("Must be authenticated", status_code=401)
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Authorization header must be 'Bearer <token>'", status_code=401)
        return token.strip()


def require_privileged(identity: Optional[CallerIdentity]) -> CallerIdentity:
    if identity is None:
        raise AuthError("Must be authenticated", status_code=401)
    if not identity.is_admin:
        logger.warning(f"Manual deadline check refused for uid={identity.uid}")
        raise AuthError("Admin privileges required", status_code=403)
    return identity
