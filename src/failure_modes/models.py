"""Failure-mode records and query parameter models."""

from datetime import datetime

from pydantic import BaseModel, Field
from typing_extensions import TypedDict

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
CUSTOM_TAG = "Custom"


class FailureMode(TypedDict):
    id: str
    category: str
    mode: str
    common_causes: list[str]
    severity_default: int
    tags: list[str]
    created_at: str  # ISO 8601
    updated_at: str  # ISO 8601


class FailureModeSearchParams(BaseModel):
    """Filters and pagination for a failure-mode search."""

    search: str | None = Field(default=None, description="Substring matched against mode or any tag.")
    category: str | None = Field(default=None, description="Exact category match.")
    limit: int | None = Field(default=None, ge=1, le=MAX_PAGE_SIZE)
    offset: int | None = Field(default=None, ge=0)

    def identifier(self) -> str:
        """Stable rate-limit identifier for this request shape."""
        return f"search-{self.model_dump_json(exclude_none=True)}"


class NewFailureMode(BaseModel):
    """Payload for adding a user-defined failure mode."""

    category: str = Field(min_length=1, max_length=200)
    mode: str = Field(min_length=1, max_length=500)
    common_causes: list[str] = Field(default_factory=list)
    severity_default: int = Field(default=5, ge=1, le=10)
    tags: list[str] = Field(default_factory=list)


class FailureModeStats(BaseModel):
    total_modes: int
    total_categories: int
    modes_by_category: dict[str, int]


class OfflineInfo(BaseModel):
    supported: bool
    enabled: bool
    cached_count: int | None = None
    last_sync: datetime | None = None
