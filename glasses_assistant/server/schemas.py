"""
Pydantic schemas for API responses and glasses bridge messages.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# === General ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str
    mode: str
    step_tracking: bool
    active_users: int
    memory_enabled: bool = False


# === Dashboard ===


class ConversationView(BaseModel):
    """Sanitized conversation entry (no photo bytes)."""

    id: str
    timestamp: int
    question: str
    response: str
    has_photo: bool
    photo_url: Optional[str] = None
    processing_time_ms: int
    status: Literal["processing", "completed", "error"]
    category: Optional[str] = None
    location: Optional[dict[str, Any]] = None
    step_number: Optional[int] = None
    project_id: Optional[str] = None
    is_step_entry: bool = False


class ConversationsResponse(BaseModel):
    """Dashboard snapshot."""

    conversations: list[ConversationView]
    active_users: int
    last_activity: Optional[int] = None


class StepView(BaseModel):
    id: str
    step_number: int
    timestamp: int
    action: str
    response: str
    project_id: str
    project_name: str
    has_photo: bool
    processing_time_ms: int
    is_completed: bool


class ProjectView(BaseModel):
    id: str
    name: str
    description: str
    task_type: str
    safety_level: str
    started_at: int
    last_updated: int
    is_active: bool
    tags: list[str] = Field(default_factory=list)
    total_steps: int
    completed_steps: int


class StepsResponse(BaseModel):
    """Step tracking snapshot."""

    steps: list[StepView]
    projects: list[ProjectView]
    active_project: Optional[ProjectView] = None


class MemorySearchResponse(BaseModel):
    """Persistent memory search results."""

    query: str
    results: list[dict[str, Any]]


# === Glasses bridge (client -> server) ===


class PhotoMessage(BaseModel):
    type: Literal["photo"]
    request_id: str
    mime_type: str = "image/jpeg"
    data: str  # base64


class PhotoErrorMessage(BaseModel):
    type: Literal["photo_error"]
    request_id: str
    error: str = "photo capture failed"


class SpeakResultMessage(BaseModel):
    type: Literal["speak_result"]
    request_id: str
    success: bool
    error: Optional[str] = None


class ButtonMessage(BaseModel):
    type: Literal["button"]
    press: Literal["short", "long"] = "short"
