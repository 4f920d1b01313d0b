# Pydantic models for TokenFlow API
# Request and response schemas for REST API

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from enum import Enum


class TokenStateName(str, Enum):
    """Token state"""
    NEW = "NEW"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class UpdateModeName(str, Enum):
    """Kind of model change"""
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    REMOVED = "REMOVED"


# ==================== Token Models ====================

class TokenStartRequest(BaseModel):
    """Request model for starting a token"""
    qualifier: str = Field(..., description="Entry qualifier, e.g. /Demo/LoopSum")
    params: Dict[str, Any] = Field(default_factory=dict, description="Entry port parameters")
    priority: int = Field(0, description="Scheduling priority (higher runs first)")
    debugger_id: Optional[str] = Field(None, description="Debugger attached to the token")
    advance: bool = Field(True, description="Run the token until it blocks")


class TokenResumeRequest(BaseModel):
    """Request model for resuming a waiting token"""
    port: Optional[str] = Field(None, description="Entry port to resume at")
    params: Optional[Dict[str, Any]] = Field(None, description="Parameters of that port (kept as is if omitted)")
    advance: bool = Field(True, description="Run the token until it blocks")


class TokenCancelRequest(BaseModel):
    """Request model for cancelling a token"""
    reason: Optional[str] = Field(None, description="Reason recorded on the token")


class CursorResponse(BaseModel):
    step: str
    port: Optional[str] = None


class TokenResponse(BaseModel):
    """Response model for a token"""
    id: str
    state: TokenStateName
    process: Optional[str] = None
    cursor: Optional[CursorResponse] = None
    wait_reason: Optional[str] = None
    parent_id: Optional[str] = None
    child_ids: List[str] = Field(default_factory=list)
    call_depth: int = 0
    priority: int = 0
    failure: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str


class TokenOutputResponse(BaseModel):
    """Output parameters of a terminated token"""
    token_id: str
    state: TokenStateName
    outputs: Dict[str, Any]


# ==================== Model Management Models ====================

class ModelDeployRequest(BaseModel):
    """Request model for deploying process definitions"""
    content: str = Field(..., description="RDF document with one or more flow:Process")
    format: str = Field("turtle", description="rdflib parser format")


class ModelDeployResponse(BaseModel):
    qualifiers: List[str]
    observers_notified: int = 0


class ModelNotifyRequest(BaseModel):
    """Request model for announcing a model change"""
    qualifier: str
    mode: UpdateModeName = UpdateModeName.UPDATED


class NotificationResponse(BaseModel):
    """Result of a model notification broadcast"""
    event: str
    delivered: int
    failures: List[Dict[str, Any]] = Field(default_factory=list)


class SessionRequest(BaseModel):
    api_key: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str


# ==================== Messaging Models ====================

class StartRequestMessage(BaseModel):
    """Asynchronous start request"""
    qualifier: str
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    debugger_id: Optional[str] = None


class StartRequestAccepted(BaseModel):
    accepted: bool = True
    qualifier: str


# ==================== Timer Models ====================

class TimerResumeRequest(BaseModel):
    """Resume a waiting token once due_at has passed"""
    due_at: datetime
    port: Optional[str] = None
    params: Optional[Dict[str, Any]] = None


class TimerStartRequest(BaseModel):
    """Start a token at an entry once due_at has passed"""
    qualifier: str
    due_at: datetime
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


class TimerScheduledResponse(BaseModel):
    job_id: str
    due_at: datetime


class TimerRunResponse(BaseModel):
    claimed: int
    fired: int
    failed: int
    token_ids: List[str] = Field(default_factory=list)


# ==================== System Models ====================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "healthy"
    version: str
    process_count: int
    token_count: int
    triple_count: int


class ErrorResponse(BaseModel):
    """Error response"""
    error: str
    code: str
    detail: Optional[str] = None
