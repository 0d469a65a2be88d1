from __future__ import annotations
import hmac
import logging
from typing import Optional

from tenantgen.errors import Unauthorized

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class BearerAuthenticator:
    """
    Validates the Authorization header against the plugin token.

    The expected token is loaded once at startup and never changes; the
    authenticator holds no other state, so a single instance is shared by
    all requests. Accept/reject only: no lockout, no rate limiting.
    """

    def __init__(self, expected_token: str) -> None:
        self._expected = (BEARER_PREFIX + expected_token).encode("utf-8")

    def authenticate(self, authorization: Optional[str]) -> None:
        """
        Compare the header's wire bytes with "Bearer <token>" as UTF-8.

        Starlette exposes header values decoded as latin-1, so encoding back
        to latin-1 recovers the exact bytes the client sent.

        Raises:
            Unauthorized: header absent, not valid UTF-8, wrong scheme, or
            wrong token.
        """
        if authorization is None:
            raise Unauthorized("missing Authorization header")

        try:
            presented = authorization.encode("latin-1")
            presented.decode("utf-8")
        except (UnicodeEncodeError, UnicodeDecodeError):
            raise Unauthorized("Authorization header is not valid UTF-8")

        if not hmac.compare_digest(presented, self._expected):
            logger.debug("Rejected request with mismatched bearer token")
            raise Unauthorized("invalid bearer token")
