from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VideoJobInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: int = Field(alias="userId")
    video_id: UUID = Field(alias="videoId")


class ThumbnailJobInput(VideoJobInput):
    prompt: str = Field(min_length=1, max_length=2000)

    @field_validator("prompt")
    @classmethod
    def _normalize_prompt(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Prompt is required")
        return v


class ThumbnailPromptIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1, max_length=2000)


class TriggerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: UUID = Field(serialization_alias="runId")


class StepPublic(BaseModel):
    name: str
    status: str
    attempts: int
    error: str | None = None


class RunPublic(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    name: str
    status: str
    attempts: int
    error: str | None = None
    payload: dict[str, Any]
    steps: list[StepPublic] = Field(default_factory=list)
