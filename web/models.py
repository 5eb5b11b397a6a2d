"""Pydantic request/response schemas for the review server."""

from typing import Optional

from pydantic import BaseModel, Field

from changes import PlatformOption


# ---- Requests ----

class ReviewRequest(BaseModel):
    modelString: Optional[str] = Field(default=None, description="provider:model-id; REVIEW_MODEL when omitted")
    maxSteps: int = Field(default=25, ge=1, le=200)
    reviewLanguage: str = "English"
    platform: PlatformOption = PlatformOption.LOCAL
    workingDirectory: Optional[str] = None
    customInstructions: Optional[str] = None
    preflight: Optional[bool] = Field(default=None, description="Override PREFLIGHT_ENABLED")


class SandboxDecisionRequest(BaseModel):
    requestId: str = Field(..., min_length=1)
    approved: bool


# ---- Responses ----

class SandboxDecisionResponse(BaseModel):
    status: str = "ok"
    requestId: str


class HealthResponse(BaseModel):
    status: str = "ok"
    pendingApprovals: int = 0
