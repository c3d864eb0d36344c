"""Pydantic models for W3C WebDriver responses."""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field


class CreatedSession(BaseModel):
    """Value of a successful New Session response."""

    session_id: str = Field(alias="sessionId")
    capabilities: Mapping[str, Any] = Field(default_factory=dict)


class NewSessionResponse(BaseModel):
    """Response from the New Session command."""

    value: CreatedSession


class WebDriverError(BaseModel):
    """Error payload of a failed command."""

    error: str
    message: str = ""


class ErrorResponse(BaseModel):
    """Response from a failed command."""

    value: WebDriverError
