"""Field mapping configuration, CSV import/export and payload preview."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.api.deps import Principal, http_error, require_operator, require_viewer
from itsm_sync.core.errors import ValidationError
from itsm_sync.database import get_db
from itsm_sync.services.connection_registry import PLATFORMS
from itsm_sync.services.field_mapping_service import (
    FieldMappingService,
    TransformRule,
    resolve,
    template_csv,
)

router = APIRouter()

_FIELD_TYPE_PATTERN = r"^(string|number|date|boolean|array)$"


class MappingCreate(BaseModel):
    internal_field: str = Field(..., min_length=1, max_length=200)
    external_field: str = Field(..., min_length=1, max_length=200)
    field_type: str = Field("string", pattern=_FIELD_TYPE_PATTERN)
    is_required: bool = False
    # Either [[match, replacement], ...] or the "critical->1, high->2" text form
    transform_rule: list[list[str]] | str | None = None
    notes: str | None = None


class MappingUpdate(BaseModel):
    internal_field: str | None = Field(None, min_length=1, max_length=200)
    external_field: str | None = Field(None, min_length=1, max_length=200)
    field_type: str | None = Field(None, pattern=_FIELD_TYPE_PATTERN)
    is_required: bool | None = None
    transform_rule: list[list[str]] | str | None = None
    notes: str | None = None


class MappingOut(BaseModel):
    id: str | None = None
    platform: str
    internal_field: str
    external_field: str
    field_type: str
    is_required: bool
    transform_rule: list[list[str]] | None = None
    transform_text: str = ""
    notes: str | None = None
    is_default: bool = False


class RejectedRowOut(BaseModel):
    row: int
    reason: str
    internal_field: str | None = None


class ImportOut(BaseModel):
    imported: int
    rejected: list[RejectedRowOut]


class PreviewIn(BaseModel):
    record: dict


def _to_out(platform: str, m) -> MappingOut:
    rule = TransformRule.from_value(m.transform_rule)
    mapping_id = getattr(m, "id", None)
    return MappingOut(
        id=str(mapping_id) if mapping_id else None,
        platform=platform,
        internal_field=m.internal_field,
        external_field=m.external_field,
        field_type=m.field_type,
        is_required=m.is_required,
        transform_rule=rule.to_json(),
        transform_text=rule.to_text(),
        notes=m.notes,
        is_default=mapping_id is None,
    )


def _check_platform(platform: str) -> None:
    if platform not in PLATFORMS:
        raise HTTPException(404, f"Unknown platform: {platform}")


def _csv_response(content: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/{platform}", response_model=list[MappingOut])
async def list_mappings(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    """Stored mappings, or the built-in template (``is_default``) when none are stored."""
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    return [_to_out(platform, m) for m in await svc.effective_mappings(platform)]


@router.post("/{platform}", response_model=MappingOut, status_code=201)
async def create_mapping(
    platform: str,
    body: MappingCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    try:
        mapping = await svc.create(platform, **body.model_dump())
    except ValidationError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return _to_out(platform, mapping)


@router.patch("/{platform}/{mapping_id}", response_model=MappingOut)
async def update_mapping(
    platform: str,
    mapping_id: uuid.UUID,
    body: MappingUpdate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    mapping = await svc.get(mapping_id)
    if mapping is None or mapping.platform != platform:
        raise HTTPException(404, "Field mapping not found")
    try:
        await svc.update(mapping, body.model_dump(exclude_unset=True))
    except ValidationError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return _to_out(platform, mapping)


@router.delete("/{platform}/{mapping_id}", status_code=204)
async def delete_mapping(
    platform: str,
    mapping_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    mapping = await svc.get(mapping_id)
    if mapping is None or mapping.platform != platform:
        raise HTTPException(404, "Field mapping not found")
    await svc.delete(mapping)
    await db.commit()


@router.post("/{platform}/import", response_model=ImportOut)
async def import_mappings(
    platform: str,
    file: UploadFile,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    _check_platform(platform)
    content = await file.read()
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(400, "CSV file must be UTF-8 encoded")
    svc = FieldMappingService(db, principal.organization_id)
    try:
        result = await svc.import_csv(platform, text)
    except ValidationError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return ImportOut(
        imported=result.imported,
        rejected=[
            RejectedRowOut(row=r.row, reason=r.reason, internal_field=r.internal_field)
            for r in result.rejected
        ],
    )


@router.get("/{platform}/export")
async def export_mappings(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    return _csv_response(await svc.export_csv(platform), f"{platform}-field-mappings.csv")


@router.get("/{platform}/template")
async def download_template(platform: str, principal: Principal = Depends(require_viewer)):
    _check_platform(platform)
    return _csv_response(template_csv(platform), f"{platform}-field-mapping-template.csv")


@router.post("/{platform}/reset", response_model=list[MappingOut])
async def reset_mappings(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    rows = await svc.reset_to_default(platform)
    await db.commit()
    return [_to_out(platform, m) for m in rows]


@router.post("/{platform}/preview")
async def preview_payload(
    platform: str,
    body: PreviewIn,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    """Resolve a sample record without queueing anything."""
    _check_platform(platform)
    svc = FieldMappingService(db, principal.organization_id)
    try:
        payload = resolve(platform, body.record, await svc.effective_mappings(platform))
    except ValidationError as exc:
        raise http_error(exc)
    return {"platform": platform, "payload": payload}
