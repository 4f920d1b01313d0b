"""Session and API key helpers for the remote boundary."""

import logging
import secrets
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from fastapi import Header, HTTPException, Request

from tokenflow.core.errors import InvalidSessionError

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"


def _extract_presented_api_key(
    x_api_key: Optional[str], authorization: Optional[str]
) -> Optional[str]:
    """Extract API key from X-API-Key or Bearer token header."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


class SessionRegistry:
    """
    Sessions of remote callers.

    A session is opened with one of the configured API keys and then
    identifies the caller on model notifications. With authentication
    disabled any API key opens a session.
    """

    def __init__(self, api_keys: Iterable[str] = (), auth_enabled: bool = False):
        self._api_keys: List[str] = [key for key in api_keys if key]
        self.auth_enabled = auth_enabled
        self._sessions: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def is_valid_key(self, api_key: Optional[str]) -> bool:
        if not self.auth_enabled:
            return True
        if not api_key:
            return False
        return any(secrets.compare_digest(api_key, key) for key in self._api_keys)

    def open_session(self, api_key: Optional[str] = None) -> str:
        """
        Open a session.

        Raises:
            InvalidSessionError: If the API key is not accepted
        """
        if not self.is_valid_key(api_key):
            raise InvalidSessionError(message="API key rejected")
        session_id = secrets.token_hex(16)
        with self._lock:
            self._sessions[session_id] = {"opened_at": datetime.now().isoformat()}
        logger.info("Opened remote session")
        return session_id

    def check_session(self, session: Optional[str]) -> None:
        """
        Raises:
            InvalidSessionError: If the session is unknown or closed
        """
        with self._lock:
            known = bool(session) and session in self._sessions
        if not known:
            raise InvalidSessionError(message="Unknown or expired session")

    def close_session(self, session: str) -> bool:
        with self._lock:
            return self._sessions.pop(session, None) is not None

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)


# ==================== FastAPI Dependencies ====================


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Optional[str]:
    """
    Enforce API key authentication when the session registry requires it.

    Accepts either:
    - `X-API-Key: <key>`
    - `Authorization: Bearer <key>`

    Returns:
        The presented key (None if none was presented)
    """
    sessions = get_sessions(request)
    presented_key = _extract_presented_api_key(x_api_key, authorization)
    if not sessions.auth_enabled:
        return presented_key
    if not presented_key or not sessions.is_valid_key(presented_key):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return presented_key


async def require_session(
    request: Request,
    x_session_id: Optional[str] = Header(default=None, alias=SESSION_HEADER),
) -> str:
    """Reject requests without a valid session header with 401."""
    try:
        get_sessions(request).check_session(x_session_id)
    except InvalidSessionError as e:
        raise HTTPException(status_code=401, detail=e.message)
    return x_session_id
