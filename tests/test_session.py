# Tests for remote sessions and API key dependencies.

import asyncio
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from tokenflow.core.errors import InvalidSessionError
from tokenflow.api.session import (
    SessionRegistry,
    _extract_presented_api_key,
    require_api_key,
    require_session,
)


def fake_request(sessions):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(sessions=sessions)))


def test_open_session_without_auth():
    """Any key opens a session while auth is disabled."""
    registry = SessionRegistry()
    session = registry.open_session()
    registry.check_session(session)
    assert registry.session_count() == 1


def test_open_session_rejects_unknown_key():
    registry = SessionRegistry(api_keys=["alpha"], auth_enabled=True)
    with pytest.raises(InvalidSessionError) as excinfo:
        registry.open_session("beta")
    assert excinfo.value.code == "InvalidSession"
    assert registry.session_count() == 0


def test_closed_session_is_invalid():
    registry = SessionRegistry(api_keys=["alpha"], auth_enabled=True)
    session = registry.open_session("alpha")
    assert registry.close_session(session)
    with pytest.raises(InvalidSessionError):
        registry.check_session(session)
    assert not registry.close_session(session)


def test_missing_session_is_invalid():
    with pytest.raises(InvalidSessionError):
        SessionRegistry().check_session(None)


def test_extract_presented_api_key():
    assert _extract_presented_api_key(" k1 ", None) == "k1"
    assert _extract_presented_api_key(None, "Bearer k2") == "k2"
    assert _extract_presented_api_key(None, "Basic abc") is None


def test_require_api_key_allows_when_auth_disabled():
    """Auth dependency should no-op when auth is disabled."""
    request = fake_request(SessionRegistry())
    assert asyncio.run(require_api_key(request, None, None)) is None


def test_require_api_key_rejects_missing_key_when_enabled():
    request = fake_request(SessionRegistry(api_keys=["topsecret"], auth_enabled=True))

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(require_api_key(request, None, None))

    assert excinfo.value.status_code == 401


def test_require_api_key_accepts_bearer_token():
    request = fake_request(SessionRegistry(api_keys=["alpha", "beta"], auth_enabled=True))
    assert asyncio.run(require_api_key(request, None, "Bearer beta")) == "beta"


def test_require_api_key_fails_closed_without_keys():
    """Enabling auth without configured keys rejects every request."""
    request = fake_request(SessionRegistry(auth_enabled=True))

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(require_api_key(request, "anything", None))

    assert excinfo.value.status_code == 401


def test_require_session():
    registry = SessionRegistry()
    session = registry.open_session()
    request = fake_request(registry)

    assert asyncio.run(require_session(request, session)) == session
    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(require_session(request, "bogus"))
    assert excinfo.value.status_code == 401
