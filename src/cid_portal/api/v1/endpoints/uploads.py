"""Administrative file uploads."""

from __future__ import annotations

import asyncio
from typing import Annotated, Any

from fastapi import APIRouter, File, UploadFile, status

from cid_portal.api.v1.dependencies import AdminSessionDep, ServicesDep
from cid_portal.core.errors import ValidationError
from cid_portal.schemas.admin import UploadResponse
from cid_portal.services.uploads import CATEGORY_RULES

router = APIRouter(prefix="/admin/uploads", tags=["admin", "uploads"])


def _category(raw: str) -> str:
    category = raw.lower().rstrip("s")
    if category not in CATEGORY_RULES:
        raise ValidationError(f"Unsupported upload category: {raw}", code="INVALID_CATEGORY")
    return category


@router.get("/stats")
def upload_stats(auth: AdminSessionDep, services: ServicesDep) -> dict[str, Any]:
    return services.uploads.stats()


@router.post("/{category}", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    category: str,
    file: Annotated[UploadFile, File(description="Image, document or video")],
    auth: AdminSessionDep,
    services: ServicesDep,
) -> UploadResponse:
    """Validate and store one file.

    Content is read one byte past the category limit so oversized files are
    rejected without buffering them whole.
    """
    kind = _category(category)
    data = await file.read(CATEGORY_RULES[kind].max_bytes + 1)
    stored = await asyncio.to_thread(
        services.uploads.save,
        data,
        file.content_type,
        kind,
        file.filename or "",
        f"user:{auth.user.id}",
        auth.context,
    )
    return UploadResponse(
        filename=stored.stored_name,
        original_name=stored.upload.sanitized_name,
        category=kind,
        mime_type=stored.upload.mime_type,
        size=stored.upload.size,
        url=f"/uploads/{stored.path.parent.name}/{stored.stored_name}",
    )
