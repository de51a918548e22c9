"""Administrative Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class UnlockAccountRequest(BaseModel):
    username: str = Field(..., min_length=1)


class LogSearchRequest(BaseModel):
    """Audit log search criteria; all filters are optional."""

    event: str | None = None
    severity: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"] | None = None
    status: Literal["SUCCESS", "FAILURE", "WARNING", "INFO"] | None = None
    username: str | None = None
    ip_address: str | None = Field(None, alias="ipAddress")
    start_date: datetime | None = Field(None, alias="startDate")
    end_date: datetime | None = Field(None, alias="endDate")
    limit: int = Field(100, ge=1, le=1000)

    model_config = ConfigDict(populate_by_name=True)


class LogCleanupRequest(BaseModel):
    older_than_days: int = Field(90, ge=1, alias="olderThanDays")

    model_config = ConfigDict(populate_by_name=True)


class UploadResponse(BaseModel):
    filename: str
    original_name: str = Field(..., alias="originalName")
    category: str
    mime_type: str = Field(..., alias="mimeType")
    size: int
    url: str

    model_config = ConfigDict(populate_by_name=True)
