"""
Admin API Request Models

Request bodies for the operational endpoints. Responses are the camelCase
dictionaries produced by the services themselves.
"""

from pydantic import BaseModel, Field, field_validator


class InvalidatePatternsRequest(BaseModel):
    """Glob patterns to clear from the cache, e.g. ["materials:*", "GET:/api/stats*"]."""

    patterns: list[str] = Field(..., min_length=1, description="Glob patterns to invalidate")

    @field_validator("patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        cleaned = [p.strip() for p in v if p and p.strip()]
        if not cleaned:
            raise ValueError("At least one non-empty pattern is required")
        return cleaned


class AlertToggleRequest(BaseModel):
    enabled: bool = Field(..., description="Enable (true) or disable (false) the rule")
