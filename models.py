"""
Scribe API Models
Request/Response schemas using Pydantic.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from sanitizer import sanitize


class ActionKind(str, Enum):
    """AI text actions supported by POST /ai-action."""

    SUMMARIZE = "summarize"
    ASK = "ask"
    REWRITE = "rewrite"
    FIX = "fix"
    IMPROVE = "improve"
    HEADING = "heading"


class ActionRequest(BaseModel):
    """
    Schema for POST /ai-action bodies.

    Free-text fields are sanitized and trimmed during validation, so a
    validated instance is safe to hash, prompt with, or store.
    """

    action: ActionKind
    content: str
    question: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "action": "ask",
                "content": "Meeting moved to Thursday 3pm, bring the Q3 numbers.",
                "question": "When is the meeting?",
            }
        },
    )

    @field_validator("content", mode="before")
    @classmethod
    def _clean_content(cls, value):
        if not isinstance(value, str):
            raise ValueError("content must be a string")
        cleaned = sanitize(value).strip()
        if not cleaned:
            raise ValueError("content must not be empty")
        return cleaned

    @field_validator("question", mode="before")
    @classmethod
    def _clean_question(cls, value):
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("question must be a string")
        cleaned = sanitize(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def _question_required_for_ask(self):
        if self.action is ActionKind.ASK and self.question is None:
            raise ValueError("question is required for the ask action")
        return self


class RateLimitDecision(BaseModel):
    """Outcome of one rate-limit check. Immutable; safe to cache and share."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int = Field(description="Epoch seconds when the upstream window resets")

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def headers(self) -> dict[str, str]:
        """Rate-limit response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_label(value):
    # Strings are sanitized before min_length runs; other types fail type validation.
    if isinstance(value, str):
        return sanitize(value).strip()
    return value


class NoteCreate(_CamelModel):
    """Schema for POST /notes requests."""

    title: str = Field(..., min_length=1)
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    folder_id: Optional[UUID] = None

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value):
        return _clean_label(value)


class NoteUpdate(_CamelModel):
    """Schema for PUT /notes/{id} requests. Omitted fields are left unchanged."""

    title: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = None
    tags: Optional[list[str]] = None
    folder_id: Optional[UUID] = None

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value):
        return _clean_label(value)


class Note(_CamelModel):
    id: UUID
    title: str
    content: str
    tags: list[str]
    folder_id: Optional[UUID]
    created_at: datetime
    updated_at: datetime


class FolderCreate(_CamelModel):
    """Schema for POST /folders requests."""

    name: str = Field(..., min_length=1)

    @field_validator("name", mode="before")
    @classmethod
    def _clean_name(cls, value):
        return _clean_label(value)


class Folder(_CamelModel):
    id: UUID
    name: str
    created_at: datetime


class HealthResponse(BaseModel):
    """Schema for GET /health responses."""

    status: str
    version: str


class StatsResponse(BaseModel):
    """Schema for GET /stats responses."""

    response_cache: dict
    rate_limit_cache: dict
    notes_cache: dict
