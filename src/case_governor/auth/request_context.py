"""Caller identity for page builds.

The API gateway validates user JWTs and forwards identity as X-User-*
headers; the governor trusts them. Roles select which entity types the
caller may read (see case_governor.auth.access). The same headers are sent
on to the record service so that it applies its own checks to the caller.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-ID"
USER_EMAIL_HEADER = "X-User-Email"
USER_ROLES_HEADER = "X-User-Roles"
CORRELATION_ID_HEADER = "X-Correlation-ID"


def _parse_roles(raw: Optional[str]) -> Tuple[str, ...]:
    """Roles arrive as a JSON array; a comma-separated list is accepted too."""
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = raw.split(",")
    if isinstance(parsed, str):
        parsed = [parsed]
    if not isinstance(parsed, list):
        logger.warning(f"Ignoring malformed {USER_ROLES_HEADER} header: {raw}")
        return ()
    return tuple(role for role in (str(item).strip() for item in parsed) if role)


@dataclass(frozen=True)
class RequestContext:
    """Identity of the caller a page is being built for.

    Attributes:
        user_id: Caller id from X-User-ID
        user_email: Caller email from X-User-Email
        user_roles: Roles from X-User-Roles
        correlation_id: Trace id from X-Correlation-ID; becomes the PageData correlation id
    """

    user_id: str
    user_email: Optional[str] = None
    user_roles: Sequence[str] = ()
    correlation_id: Optional[str] = None

    @classmethod
    def system(cls) -> "RequestContext":
        """Context for internal callers (the hub's own builds, background jobs)."""
        return cls(user_id="system", user_roles=("system",))

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["RequestContext"]:
        """Build a context from gateway headers; None when the caller is not identified."""
        user_id = headers.get(USER_ID_HEADER)
        if not user_id:
            return None
        return cls(
            user_id=user_id,
            user_email=headers.get(USER_EMAIL_HEADER),
            user_roles=_parse_roles(headers.get(USER_ROLES_HEADER)),
            correlation_id=headers.get(CORRELATION_ID_HEADER),
        )

    def to_headers(self) -> Dict[str, str]:
        headers = {USER_ID_HEADER: self.user_id}
        if self.user_email:
            headers[USER_EMAIL_HEADER] = self.user_email
        if self.user_roles:
            headers[USER_ROLES_HEADER] = json.dumps(list(self.user_roles))
        if self.correlation_id:
            headers[CORRELATION_ID_HEADER] = self.correlation_id
        return headers


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency resolving the caller of a page-data request.

    Raises:
        HTTPException: 401 if the gateway did not identify the caller
    """
    context = RequestContext.from_headers(request.headers)
    if context is None:
        logger.error(f"Missing {USER_ID_HEADER} header on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{USER_ID_HEADER} header required (added by the API gateway)",
        )
    return context
