"""Field mapping: internal record → platform payload, plus mapping CRUD and CSV I/O."""

from __future__ import annotations

import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.core.errors import MissingRequiredField, ValidationError
from itsm_sync.models.field_mapping import FIELD_TYPES, FieldMapping

logger = logging.getLogger(__name__)

CSV_HEADER = ["internal_field", "external_field", "field_type", "is_required", "notes"]

_TRUTHY = ("true", "1", "yes", "y")


# ---------------------------------------------------------------------------
# Transform rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransformRule:
    """Ordered exact-match substitution. First match wins, no match passes through."""

    pairs: tuple[tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, text: str | None) -> TransformRule:
        """Parse the ``"critical->1, high->2"`` form."""
        if not text or not text.strip():
            return cls()
        pairs = []
        for segment in text.split(","):
            segment = segment.strip()
            if not segment:
                continue
            if "->" not in segment:
                raise ValidationError(f"Invalid transform rule segment: {segment!r}")
            match, replacement = segment.split("->", 1)
            pairs.append((match.strip(), replacement.strip()))
        return cls(tuple(pairs))

    @classmethod
    def from_value(cls, value: Any) -> TransformRule:
        """Accept the stored JSON pair list, the text form, or nothing."""
        if value is None:
            return cls()
        if isinstance(value, TransformRule):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        pairs = []
        for pair in value:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValidationError(f"Invalid transform rule pair: {pair!r}")
            pairs.append((str(pair[0]), str(pair[1])))
        return cls(tuple(pairs))

    def apply(self, value: Any) -> Any:
        if not self.pairs or isinstance(value, (list, dict)):
            return value
        key = str(value)
        for match, replacement in self.pairs:
            if key == match:
                return replacement
        return value

    def to_json(self) -> list[list[str]] | None:
        return [list(p) for p in self.pairs] or None

    def to_text(self) -> str:
        return ", ".join(f"{m}->{r}" for m, r in self.pairs)


def coerce_value(value: Any, field_type: str, field_name: str = "") -> Any:
    """Convert a mapped value to the declared external field type."""
    if field_type == "string":
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value if isinstance(value, str) else str(value)

    if field_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            raise ValidationError(f"Field {field_name} is not a valid number: {value!r}")
        return int(number) if number.is_integer() else number

    if field_type == "date":
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        text = str(value).strip()
        try:
            return datetime.fromisoformat(text).isoformat()
        except ValueError:
            raise ValidationError(f"Field {field_name} is not a valid date: {value!r}")

    if field_type == "boolean":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUTHY

    if field_type == "array":
        if isinstance(value, list):
            return value
        if isinstance(value, (tuple, set)):
            return list(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [value]

    raise ValidationError(f"Unknown field type: {field_type}")


def _get_nested(source: dict, path: str) -> Any:
    """Get a value from a dotted path."""
    current: Any = source
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        else:
            return None
    return current


def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MappingSpec:
    internal_field: str
    external_field: str
    field_type: str = "string"
    is_required: bool = False
    transform_rule: list | None = None
    notes: str | None = None


DEFAULT_MAPPINGS: dict[str, tuple[MappingSpec, ...]] = {
    "servicenow": (
        MappingSpec("title", "short_description", is_required=True, notes="Ticket title"),
        MappingSpec("description", "description", is_required=True, notes="Full description"),
        MappingSpec(
            "severity",
            "impact",
            is_required=True,
            transform_rule=[["critical", "1"], ["high", "2"], ["medium", "3"], ["low", "4"]],
            notes="Severity mapping",
        ),
        MappingSpec(
            "status",
            "state",
            is_required=True,
            transform_rule=[["open", "1"], ["investigating", "2"], ["resolved", "6"], ["closed", "7"]],
            notes="Status workflow",
        ),
        MappingSpec("assignee", "assigned_to", notes="User assignment"),
        MappingSpec("reference_id", "u_external_id", is_required=True, notes="External reference ID"),
    ),
    "jira": (
        MappingSpec("title", "summary", is_required=True, notes="Issue summary"),
        MappingSpec("description", "description", is_required=True, notes="Issue description"),
        MappingSpec(
            "severity",
            "priority",
            is_required=True,
            transform_rule=[
                ["critical", "Highest"],
                ["high", "High"],
                ["medium", "Medium"],
                ["low", "Low"],
            ],
            notes="Priority mapping",
        ),
        MappingSpec(
            "status",
            "status",
            is_required=True,
            transform_rule=[
                ["open", "To Do"],
                ["investigating", "In Progress"],
                ["resolved", "Done"],
                ["closed", "Done"],
            ],
            notes="Issue status",
        ),
        MappingSpec("assignee", "assignee", notes="User assignment"),
        MappingSpec(
            "reference_id", "customfield_external_id", is_required=True, notes="External reference ID"
        ),
    ),
}


def resolve(platform: str, record: dict, mappings) -> dict:
    """Build the external payload for ``record``.

    Raises MissingRequiredField on the first required field that is absent;
    optional absent fields are left out of the payload.
    """
    payload: dict[str, Any] = {}
    for m in mappings:
        raw = _get_nested(record, m.internal_field)
        if _is_absent(raw):
            if m.is_required:
                raise MissingRequiredField(m.internal_field)
            continue
        value = TransformRule.from_value(m.transform_rule).apply(raw)
        payload[m.external_field] = coerce_value(value, m.field_type, m.internal_field)
    logger.debug("Resolved %d of %d mapped fields for %s", len(payload), len(mappings), platform)
    return payload


# ---------------------------------------------------------------------------
# CSV parsing
# ---------------------------------------------------------------------------


@dataclass
class RowRejection:
    row: int
    reason: str
    internal_field: str | None = None


@dataclass
class ImportResult:
    imported: int = 0
    rejected: list[RowRejection] = field(default_factory=list)


def parse_mapping_csv(text: str) -> tuple[list[MappingSpec], list[RowRejection]]:
    """Validate CSV rows independently; bad rows are reported, good rows kept."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    header = [h.strip() for h in (reader.fieldnames or [])]
    missing = [col for col in ("internal_field", "external_field") if col not in header]
    if missing:
        raise ValidationError(f"CSV header must be: {','.join(CSV_HEADER)}")
    reader.fieldnames = header

    accepted: list[MappingSpec] = []
    rejected: list[RowRejection] = []
    seen: set[str] = set()
    for row in reader:
        line = reader.line_num
        values = {k: (v or "").strip() for k, v in row.items() if k}
        if not any(values.values()):
            continue
        internal = values.get("internal_field", "")
        external = values.get("external_field", "")
        if not internal:
            rejected.append(RowRejection(line, "Missing internal_field"))
            continue
        if not external:
            rejected.append(RowRejection(line, "Missing external_field", internal))
            continue
        field_type = (values.get("field_type") or "string").lower()
        if field_type not in FIELD_TYPES:
            rejected.append(RowRejection(line, f"Invalid field_type: {field_type}", internal))
            continue
        if internal in seen:
            rejected.append(RowRejection(line, f"Duplicate internal_field: {internal}", internal))
            continue
        seen.add(internal)
        accepted.append(
            MappingSpec(
                internal_field=internal,
                external_field=external,
                field_type=field_type,
                is_required=values.get("is_required", "").lower() in _TRUTHY,
                notes=values.get("notes") or None,
            )
        )
    return accepted, rejected


def mappings_to_csv(mappings) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for m in mappings:
        writer.writerow(
            [
                m.internal_field,
                m.external_field,
                m.field_type,
                "true" if m.is_required else "false",
                m.notes or "",
            ]
        )
    return output.getvalue()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class FieldMappingService:
    """Mapping CRUD for one organization. Callers own the transaction."""

    def __init__(self, db: AsyncSession, organization_id: str):
        self.db = db
        self.organization_id = organization_id

    async def list_mappings(self, platform: str) -> list[FieldMapping]:
        result = await self.db.execute(
            select(FieldMapping)
            .where(
                FieldMapping.organization_id == self.organization_id,
                FieldMapping.platform == platform,
            )
            .order_by(FieldMapping.created_at, FieldMapping.internal_field)
        )
        return list(result.scalars().all())

    async def effective_mappings(self, platform: str) -> list:
        """Stored mappings, or the built-in template when none are stored."""
        stored = await self.list_mappings(platform)
        if stored:
            return stored
        return list(DEFAULT_MAPPINGS.get(platform, ()))

    async def get(self, mapping_id: uuid.UUID) -> FieldMapping | None:
        result = await self.db.execute(
            select(FieldMapping).where(
                FieldMapping.id == mapping_id,
                FieldMapping.organization_id == self.organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def _exists(self, platform: str, internal_field: str) -> bool:
        result = await self.db.execute(
            select(FieldMapping.id).where(
                FieldMapping.organization_id == self.organization_id,
                FieldMapping.platform == platform,
                FieldMapping.internal_field == internal_field,
            )
        )
        return result.first() is not None

    async def create(
        self,
        platform: str,
        internal_field: str,
        external_field: str,
        field_type: str = "string",
        is_required: bool = False,
        transform_rule: Any = None,
        notes: str | None = None,
    ) -> FieldMapping:
        _validate_fields(internal_field, external_field, field_type)
        if await self._exists(platform, internal_field):
            raise ValidationError(f"Mapping for {internal_field} already exists")
        mapping = FieldMapping(
            organization_id=self.organization_id,
            platform=platform,
            internal_field=internal_field,
            external_field=external_field,
            field_type=field_type,
            is_required=is_required,
            transform_rule=TransformRule.from_value(transform_rule).to_json(),
            notes=notes,
        )
        self.db.add(mapping)
        await self.db.flush()
        return mapping

    async def update(self, mapping: FieldMapping, changes: dict) -> FieldMapping:
        internal = changes.get("internal_field", mapping.internal_field)
        external = changes.get("external_field", mapping.external_field)
        field_type = changes.get("field_type", mapping.field_type)
        _validate_fields(internal, external, field_type)
        if internal != mapping.internal_field and await self._exists(mapping.platform, internal):
            raise ValidationError(f"Mapping for {internal} already exists")
        for key, value in changes.items():
            if key == "transform_rule":
                value = TransformRule.from_value(value).to_json()
            setattr(mapping, key, value)
        await self.db.flush()
        return mapping

    async def delete(self, mapping: FieldMapping) -> None:
        await self.db.delete(mapping)
        await self.db.flush()

    async def _replace(self, platform: str, specs: list[MappingSpec]) -> list[FieldMapping]:
        await self.db.execute(
            delete(FieldMapping).where(
                FieldMapping.organization_id == self.organization_id,
                FieldMapping.platform == platform,
            )
        )
        rows = [
            FieldMapping(
                organization_id=self.organization_id,
                platform=platform,
                internal_field=s.internal_field,
                external_field=s.external_field,
                field_type=s.field_type,
                is_required=s.is_required,
                transform_rule=s.transform_rule,
                notes=s.notes,
            )
            for s in specs
        ]
        self.db.add_all(rows)
        await self.db.flush()
        return rows

    async def import_csv(self, platform: str, text: str) -> ImportResult:
        """Replace the platform's mapping set with the well-formed rows of ``text``.

        Transform rules of internal fields that survive the import are kept.
        A file with no acceptable rows leaves the current set untouched.
        """
        accepted, rejected = parse_mapping_csv(text)
        if not accepted:
            return ImportResult(imported=0, rejected=rejected)
        existing_rules = {
            m.internal_field: m.transform_rule for m in await self.effective_mappings(platform)
        }
        specs = [
            MappingSpec(
                internal_field=s.internal_field,
                external_field=s.external_field,
                field_type=s.field_type,
                is_required=s.is_required,
                transform_rule=existing_rules.get(s.internal_field),
                notes=s.notes,
            )
            for s in accepted
        ]
        await self._replace(platform, specs)
        logger.info(
            "Imported %d field mappings for %s (%d rejected)", len(specs), platform, len(rejected)
        )
        return ImportResult(imported=len(specs), rejected=rejected)

    async def export_csv(self, platform: str) -> str:
        return mappings_to_csv(await self.effective_mappings(platform))

    async def reset_to_default(self, platform: str) -> list[FieldMapping]:
        rows = await self._replace(platform, list(DEFAULT_MAPPINGS.get(platform, ())))
        logger.info("Reset %s field mappings to the default template", platform)
        return rows


def template_csv(platform: str) -> str:
    """Downloadable CSV pre-filled with the platform's default template."""
    return mappings_to_csv(DEFAULT_MAPPINGS.get(platform, ()))


def _validate_fields(internal_field: str, external_field: str, field_type: str) -> None:
    if not internal_field or not internal_field.strip():
        raise ValidationError("internal_field is required")
    if not external_field or not external_field.strip():
        raise ValidationError("external_field is required")
    if field_type not in FIELD_TYPES:
        raise ValidationError(f"Invalid field_type: {field_type}")
