# Token API Endpoints
# REST API for starting, inspecting, resuming and cancelling tokens

from typing import Optional

from fastapi import APIRouter, Request

from tokenflow.api.execution.token_context import TokenContext
from tokenflow.api.models import (
    TokenCancelRequest,
    TokenOutputResponse,
    TokenResponse,
    TokenResumeRequest,
    TokenStartRequest,
    TimerResumeRequest,
    TimerScheduledResponse,
)

router = APIRouter(prefix="/tokens", tags=["Tokens"])


def get_facade(request: Request):
    return request.app.state.facade


def token_response(token: TokenContext) -> TokenResponse:
    data = token.to_dict()
    return TokenResponse(
        id=data["id"],
        state=data["state"],
        process=data["process"],
        cursor=data["cursor"],
        wait_reason=data["wait_reason"],
        parent_id=data["parent_id"],
        child_ids=data["child_ids"],
        call_depth=token.call_depth,
        priority=data["priority"],
        failure=data["failure"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


@router.post("/start", response_model=TokenResponse, status_code=201)
def start_token(request: Request, body: TokenStartRequest):
    """
    Create a token and start it at a process entry.

    With ``advance`` the token runs until it blocks before the response is
    returned; otherwise it is put on the ready queue.
    """
    facade = get_facade(request)
    token = facade.create_token(priority=body.priority, debugger_id=body.debugger_id)
    facade.start_token(token, body.qualifier, body.params, advance=body.advance)
    return token_response(token)


@router.get("/{token_id}", response_model=TokenResponse)
def get_token(request: Request, token_id: str):
    """Get the current state and position of a token."""
    return token_response(get_facade(request).get_token(token_id))


@router.post("/{token_id}/resume", response_model=TokenResponse)
def resume_token(request: Request, token_id: str, body: TokenResumeRequest):
    """Resume a suspended token, optionally at another entry port."""
    facade = get_facade(request)
    token = facade.get_token(token_id)
    facade.resume_token(token, port=body.port, input_params=body.params, advance=body.advance)
    return token_response(token)


@router.post("/{token_id}/resume-at", response_model=TimerScheduledResponse, status_code=201)
def schedule_resume(request: Request, token_id: str, body: TimerResumeRequest):
    """Resume a suspended token once due_at has passed."""
    facade = get_facade(request)
    token = facade.get_token(token_id)
    job_id = facade.schedule_resume(
        token, body.due_at, port=body.port, input_params=body.params
    )
    return TimerScheduledResponse(job_id=job_id, due_at=body.due_at)


@router.post("/{token_id}/cancel", response_model=TokenResponse)
def cancel_token(request: Request, token_id: str, body: Optional[TokenCancelRequest] = None):
    """Cancel a NEW or WAITING token. A RUNNING token answers 409."""
    facade = get_facade(request)
    token = facade.get_token(token_id)
    facade.cancel_token(token, reason=(body.reason if body else None) or "")
    return token_response(token)


@router.get("/{token_id}/output", response_model=TokenOutputResponse)
def get_token_output(request: Request, token_id: str):
    """Get the output parameters of a terminated token."""
    facade = get_facade(request)
    token = facade.get_token(token_id)
    return TokenOutputResponse(
        token_id=token.id,
        state=token.state.value,
        outputs=facade.retrieve_output_parameters(token),
    )
