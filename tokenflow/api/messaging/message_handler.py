# Message Handler for TokenFlow Engine
# Sends and receives asynchronous start requests for processes

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from tokenflow.core.errors import TokenFlowError

logger = logging.getLogger(__name__)

START_REQUEST_PATH = "/api/v1/start-requests"


class StartRequestHandler:
    """
    Receiving side of an asynchronous start request.

    A start request carries a process entry qualifier, the input parameters
    and optionally a priority. Handling it creates a token, starts it and
    advances it until it blocks. The sender gets no reply: failures are
    logged and kept in ``history``, never raised.

    Message format:
        {"qualifier": "/Demo/LoopSum", "params": {...}, "priority": 0}
    """

    def __init__(self, facade, history_size: int = 100):
        """
        Initialize the start request handler.

        Args:
            facade: ProcessFacade that runs the started tokens
            history_size: Number of handled requests to remember
        """
        self._facade = facade
        self._history_size = history_size
        self._history: List[Dict[str, Any]] = []
        self._history_lock = threading.Lock()

    def handle(self, message: Dict[str, Any]) -> Optional[str]:
        """
        Start a process from a start request message.

        Returns:
            The id of the started token, None if the request failed
        """
        qualifier = message.get("qualifier")
        params = message.get("params") or {}
        token = None
        try:
            if not qualifier:
                raise ValueError("start request without qualifier")
            token = self._facade.create_token(
                priority=int(message.get("priority") or 0),
                debugger_id=message.get("debugger_id"),
            )
            state = self._facade.start_token(token, qualifier, params, advance=True)
        except (TokenFlowError, ValueError, TypeError) as e:
            logger.error(f"Start request for {qualifier} failed: {e}")
            self._remember(qualifier, token, "FAILED", str(e))
            return None
        except Exception as e:
            logger.exception(f"Start request for {qualifier} crashed: {e}")
            self._remember(qualifier, token, "FAILED", f"{type(e).__name__}: {e}")
            return None

        logger.info(f"Start request for {qualifier} ran token {token.id} to {state.value}")
        self._remember(qualifier, token, state.value, None)
        return token.id

    def history(self) -> List[Dict[str, Any]]:
        with self._history_lock:
            return list(self._history)

    def _remember(self, qualifier, token, state: str, error: Optional[str]) -> None:
        entry = {
            "qualifier": qualifier,
            "token_id": token.id if token is not None else None,
            "state": state,
            "error": error,
            "handled_at": datetime.now().isoformat(),
        }
        with self._history_lock:
            self._history.append(entry)
            del self._history[: -self._history_size]


def send_start_request(
    url: str,
    qualifier: str,
    params: Optional[Dict[str, Any]] = None,
    priority: int = 0,
    api_key: Optional[str] = None,
    timeout: int = 30,
) -> bool:
    """
    Post a start request to a remote engine.

    Args:
        url: Base URL of the remote engine
        qualifier: Entry qualifier of the process to start
        params: Input parameters
        priority: Token priority on the remote side
        api_key: Sent as X-API-Key when given
        timeout: Request timeout in seconds

    Returns:
        True if the remote engine accepted the request
    """
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["X-API-Key"] = api_key
    body = {"qualifier": qualifier, "params": params or {}, "priority": priority}

    try:
        response = requests.post(
            url.rstrip("/") + START_REQUEST_PATH,
            json=body,
            headers=headers,
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Sending start request for {qualifier} to {url} failed: {e}")
        return False

    logger.debug(f"Start request for {qualifier} accepted by {url}")
    return True
