"""
Column mapping between spreadsheet headers and client fields.

Target fields form a closed registry; custom fields are addressed through the
``custom.<key>`` namespace. Mappings can be built from payloads (templates,
API input) or loaded from YAML files for operator use.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

from .errors import MappingError
from .parsing import ParsedRow
from .validators import strip_formatting

CUSTOM_FIELD_PREFIX = "custom."


class Transformation(str, enum.Enum):
    """Value transformations applied after defaulting."""

    NONE = "none"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    STRIP_FORMATTING = "strip_formatting"


class FieldType(str, enum.Enum):
    TEXT = "text"
    TAX_ID = "tax_id"
    REGISTRY_ID = "registry_id"
    EMAIL = "email"
    POSTAL_CODE = "postal_code"
    STATUS = "status"
    CLIENT_TYPE = "client_type"
    CUSTOM = "custom"


_TRUE_FLAGS = frozenset({"1", "true", "yes", "on"})
_FALSE_FLAGS = frozenset({"0", "false", "no", "off", ""})


def _coerce_required(value: Any, source: str) -> bool:
    """Read a ``required`` flag that may arrive as text from templates or YAML."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE_FLAGS:
        return True
    if token in _FALSE_FLAGS:
        return False
    raise MappingError(f"Invalid 'required' flag {value!r} for column '{source}'.")


@dataclass(frozen=True)
class TargetField:
    name: str
    field_type: FieldType
    label: str
    max_length: int | None = None

    @property
    def is_custom(self) -> bool:
        return self.field_type is FieldType.CUSTOM

    @property
    def custom_key(self) -> str | None:
        if not self.is_custom:
            return None
        return self.name[len(CUSTOM_FIELD_PREFIX) :]


TARGET_FIELDS: dict[str, TargetField] = {
    target.name: target
    for target in (
        TargetField("client_type", FieldType.CLIENT_TYPE, "Client type"),
        TargetField("company_name", FieldType.TEXT, "Company name", 255),
        TargetField("first_name", FieldType.TEXT, "First name", 100),
        TargetField("last_name", FieldType.TEXT, "Last name", 100),
        TargetField("tax_id", FieldType.TAX_ID, "NIP"),
        TargetField("regon", FieldType.REGISTRY_ID, "REGON"),
        TargetField("email", FieldType.EMAIL, "Email", 255),
        TargetField("phone", FieldType.TEXT, "Phone", 50),
        TargetField("street", FieldType.TEXT, "Street", 255),
        TargetField("city", FieldType.TEXT, "City", 100),
        TargetField("postal_code", FieldType.POSTAL_CODE, "Postal code"),
        TargetField("country", FieldType.TEXT, "Country", 2),
        TargetField("notes", FieldType.TEXT, "Notes"),
        TargetField("status", FieldType.STATUS, "Status"),
    )
}


def resolve_target_field(name: str) -> TargetField:
    """Look up a target field, accepting ``custom.<key>`` names."""
    token = (name or "").strip()
    if token.startswith(CUSTOM_FIELD_PREFIX):
        key = token[len(CUSTOM_FIELD_PREFIX) :].strip()
        if not key:
            raise MappingError("Custom field target requires a key, e.g. 'custom.segment'.")
        return TargetField(f"{CUSTOM_FIELD_PREFIX}{key}", FieldType.CUSTOM, key)
    try:
        return TARGET_FIELDS[token]
    except KeyError:
        raise MappingError(f"Unknown target field '{name}'.") from None


def apply_transformation(value: str, transformation: Transformation) -> str:
    if transformation is Transformation.UPPERCASE:
        return value.upper()
    if transformation is Transformation.LOWERCASE:
        return value.lower()
    if transformation is Transformation.TRIM:
        return value.strip()
    if transformation is Transformation.STRIP_FORMATTING:
        return strip_formatting(value)
    return value


def _is_empty(value: str | None) -> bool:
    return value is None or value.strip() == ""


def normalize_key(field_name: str, value: str | None) -> str | None:
    """
    Canonical form of a duplicate-detection key.

    Identifier keys ignore spaces and dashes; email keys ignore case.
    """
    if _is_empty(value):
        return None
    field_type = resolve_target_field(field_name).field_type
    if field_type in (FieldType.TAX_ID, FieldType.REGISTRY_ID):
        return strip_formatting(value) or None
    if field_type is FieldType.EMAIL:
        return value.strip().lower()
    return value.strip()


@dataclass(frozen=True)
class ColumnMapping:
    """Maps one source column onto one target field."""

    source_column: str
    target_field: str
    transformation: Transformation = Transformation.NONE
    default_value: str | None = None
    required: bool = False

    @property
    def target(self) -> TargetField:
        return resolve_target_field(self.target_field)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ColumnMapping":
        if not isinstance(payload, Mapping):
            raise MappingError(f"Column mapping must be a mapping, got {payload!r}")
        source = str(payload.get("source_column") or payload.get("source") or "").strip()
        target = str(payload.get("target_field") or payload.get("target") or "").strip()
        if not source:
            raise MappingError(f"Column mapping missing source column: {payload!r}")
        if not target:
            raise MappingError(f"Column mapping for '{source}' missing target field.")
        raw_transformation = payload.get("transformation") or payload.get("transform") or Transformation.NONE.value
        try:
            transformation = Transformation(str(raw_transformation).strip().lower())
        except ValueError:
            raise MappingError(f"Unknown transformation '{raw_transformation}' for column '{source}'.") from None
        default = payload.get("default_value", payload.get("default"))
        mapping = cls(
            source_column=source,
            target_field=resolve_target_field(target).name,
            transformation=transformation,
            default_value=None if default is None else str(default),
            required=_coerce_required(payload.get("required"), source),
        )
        return mapping

    def to_payload(self) -> dict[str, Any]:
        return {
            "source_column": self.source_column,
            "target_field": self.target_field,
            "transformation": self.transformation.value,
            "default_value": self.default_value,
            "required": self.required,
        }

    def resolve(self, fields: Mapping[str, str]) -> tuple[str | None, str | None]:
        """Return ``(raw, resolved)`` for this mapping against a row."""
        raw = fields.get(self.source_column)
        value = self.default_value if _is_empty(raw) else raw
        if _is_empty(value):
            return raw, None
        return raw, apply_transformation(value, self.transformation)


@dataclass(frozen=True)
class ResolvedRow:
    """Target-field values for a parsed row, alongside the raw source values."""

    row_number: int
    values: dict[str, str | None]
    raw_values: dict[str, str | None] = field(default_factory=dict)

    def standard_values(self) -> dict[str, str | None]:
        return {name: value for name, value in self.values.items() if not name.startswith(CUSTOM_FIELD_PREFIX)}

    def custom_values(self) -> dict[str, str | None]:
        return {
            name[len(CUSTOM_FIELD_PREFIX) :]: value
            for name, value in self.values.items()
            if name.startswith(CUSTOM_FIELD_PREFIX)
        }


@dataclass(frozen=True)
class MappingSet:
    """Validated collection of column mappings for one import."""

    mappings: tuple[ColumnMapping, ...]

    @classmethod
    def build(cls, mappings: Iterable[ColumnMapping | Mapping[str, Any]]) -> "MappingSet":
        resolved: list[ColumnMapping] = []
        seen_targets: set[str] = set()
        for entry in mappings:
            mapping = entry if isinstance(entry, ColumnMapping) else ColumnMapping.from_payload(entry)
            # Validates the target even for directly constructed mappings.
            target = mapping.target
            if target.name in seen_targets:
                raise MappingError(f"Duplicate target field '{target.name}' in mapping.")
            seen_targets.add(target.name)
            resolved.append(mapping)
        if not resolved:
            raise MappingError("Mapping must define at least one column.")
        return cls(mappings=tuple(resolved))

    @classmethod
    def from_payload(cls, payload: Sequence[Mapping[str, Any]] | None) -> "MappingSet":
        if not payload:
            raise MappingError("Mapping must define at least one column.")
        return cls.build(payload)

    @classmethod
    def from_template(cls, template: Any) -> "MappingSet":
        """Build from a stored ``MappingTemplate`` (anything exposing ``mapping_json``)."""
        return cls.from_payload(template.mapping_json)

    def to_payload(self) -> list[dict[str, Any]]:
        return [mapping.to_payload() for mapping in self.mappings]

    def override(
        self,
        overrides: Iterable[ColumnMapping | Mapping[str, Any]] = (),
        *,
        exclude: Iterable[str] = (),
    ) -> "MappingSet":
        """
        Apply ad-hoc changes on top of a template.

        An override replaces any mapping that shares its source column or its
        target field; ``exclude`` drops mappings by source column.
        """
        excluded = {column.strip() for column in exclude}
        override_list = [
            entry if isinstance(entry, ColumnMapping) else ColumnMapping.from_payload(entry) for entry in overrides
        ]
        replaced_sources = {mapping.source_column for mapping in override_list}
        replaced_targets = {mapping.target_field for mapping in override_list}
        kept = [
            mapping
            for mapping in self.mappings
            if mapping.source_column not in excluded
            and mapping.source_column not in replaced_sources
            and mapping.target_field not in replaced_targets
        ]
        return MappingSet.build([*kept, *override_list])

    @property
    def target_fields(self) -> tuple[str, ...]:
        return tuple(mapping.target_field for mapping in self.mappings)

    def for_target(self, target_field: str) -> ColumnMapping | None:
        for mapping in self.mappings:
            if mapping.target_field == target_field:
                return mapping
        return None

    def missing_columns(self, headers: Iterable[str]) -> list[str]:
        """Source columns absent from the file that have no default to fall back on."""
        available = set(headers)
        return [
            mapping.source_column
            for mapping in self.mappings
            if mapping.source_column not in available and mapping.default_value is None
        ]

    def resolve_row(self, row: ParsedRow) -> ResolvedRow:
        values: dict[str, str | None] = {}
        raw_values: dict[str, str | None] = {}
        for mapping in self.mappings:
            raw, value = mapping.resolve(row.fields)
            values[mapping.target_field] = value
            raw_values[mapping.target_field] = raw
        return ResolvedRow(row_number=row.row_number, values=values, raw_values=raw_values)


def load_mapping_file(path: str | Path) -> MappingSet:
    """
    Load a column mapping from YAML.

    Expected layout::

        version: 1
        fields:
          - source: NIP
            target: tax_id
            transform: strip_formatting
            required: true
    """
    path = Path(path)
    if not path.exists():
        raise MappingError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise MappingError(f"Mapping file {path} must contain a mapping at the top level.")
    try:
        version = int(raw.get("version", 1))
    except (TypeError, ValueError) as exc:
        raise MappingError(f"Invalid mapping attribute: {exc}") from exc
    if version != 1:
        raise MappingError(f"Unsupported mapping version {version}.")

    fields_payload = raw.get("fields")
    if not isinstance(fields_payload, list):
        raise MappingError("Missing required mapping attribute: 'fields'")
    return MappingSet.build(fields_payload)
