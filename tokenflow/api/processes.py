# Process Model API Endpoints
# REST API for deploying models, model notifications and start requests

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from tokenflow.api.events.notification_service import UpdateMode
from tokenflow.api.models import (
    ModelDeployRequest,
    ModelDeployResponse,
    ModelNotifyRequest,
    NotificationResponse,
    SessionRequest,
    SessionResponse,
    StartRequestAccepted,
    StartRequestMessage,
    TimerRunResponse,
    TimerScheduledResponse,
    TimerStartRequest,
)
from tokenflow.api.session import require_session

router = APIRouter(tags=["Process Models"])


def notification_response(report) -> NotificationResponse:
    return NotificationResponse(
        event=report.event, delivered=report.delivered, failures=report.failures
    )


@router.get("/models")
async def list_models(
    request: Request,
    model: Optional[str] = Query(None, description="Filter by model name"),
):
    """List the deployed process definitions."""
    processes = request.app.state.facade.processes.list_processes(model=model)
    return {"processes": processes, "total": len(processes)}


@router.post("/models/deploy", response_model=ModelDeployResponse, status_code=201)
def deploy_models(request: Request, body: ModelDeployRequest):
    """
    Deploy the processes of an RDF document.

    Observers are told about every deployed process (ADDED for new ones,
    UPDATED for replaced ones).
    """
    processes = request.app.state.facade.processes
    notifications = request.app.state.notifications
    known = {p["qualifier"] for p in processes.list_processes()}

    deployed = processes.deploy(body.content, format=body.format)
    notified = 0
    for qualifier in deployed:
        mode = UpdateMode.UPDATED if str(qualifier) in known else UpdateMode.ADDED
        notified += notifications.model_updated(qualifier, mode).delivered
    return ModelDeployResponse(
        qualifiers=[str(q) for q in deployed], observers_notified=notified
    )


@router.post("/models/notify", response_model=NotificationResponse)
def notify_model_update(
    request: Request,
    body: ModelNotifyRequest,
    session: str = Depends(require_session),
):
    """Announce that a process model was changed outside this engine."""
    report = request.app.state.notifications.model_updated(
        body.qualifier, UpdateMode(body.mode.value), session=session
    )
    return notification_response(report)


@router.post("/models/reset", response_model=NotificationResponse)
def reset_models(request: Request, session: str = Depends(require_session)):
    """Drop all cached definitions and announce a model reset."""
    report = request.app.state.notifications.model_reset(session=session)
    return notification_response(report)


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def open_session(request: Request, body: SessionRequest):
    """Open a session for model notifications."""
    session_id = request.app.state.sessions.open_session(body.api_key)
    return SessionResponse(session_id=session_id)


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(request: Request, session_id: str):
    request.app.state.sessions.close_session(session_id)


@router.post("/start-requests", response_model=StartRequestAccepted, status_code=202)
async def accept_start_request(
    request: Request, body: StartRequestMessage, background_tasks: BackgroundTasks
):
    """
    Accept an asynchronous start request.

    The process is started after the response was sent; the caller gets no
    result and failures are only logged.
    """
    background_tasks.add_task(request.app.state.start_requests.handle, body.model_dump())
    return StartRequestAccepted(qualifier=body.qualifier)


@router.post("/timers/start", response_model=TimerScheduledResponse, status_code=201)
def schedule_start(request: Request, body: TimerStartRequest):
    """Start a token at an entry once due_at has passed."""
    facade = request.app.state.facade
    job_id = facade.schedule_start(
        body.qualifier, body.due_at, input_params=body.params, priority=body.priority
    )
    return TimerScheduledResponse(job_id=job_id, due_at=body.due_at)


@router.post("/timers/run", response_model=TimerRunResponse)
def run_due_timers(request: Request):
    """Fire the timer jobs that are due now."""
    return TimerRunResponse(**request.app.state.facade.run_due_timers())
