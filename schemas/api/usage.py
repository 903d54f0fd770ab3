"""Usage and category selection schemas."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class UsageOperationRequest(BaseModel):
    artifactId: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Artifact identifier; a repeated value is not counted twice.",
    )
    durationSeconds: Optional[float] = Field(default=None, ge=0)
    sizeBytes: Optional[int] = Field(default=None, ge=0)


class UsageOperationResponse(BaseModel):
    allowed: bool
    recorded: bool
    duplicate: bool
    usage: Dict[str, Any] = Field(default_factory=dict)


class CategorySelectionRequest(BaseModel):
    categories: List[str] = Field(default_factory=list)
    primaryCategory: Optional[str] = None


class CategorySelectionResponse(BaseModel):
    selectedCategories: List[str]
    primaryCategory: Optional[str] = None
    availableCategories: List[str] = Field(default_factory=list)
