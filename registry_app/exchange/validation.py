"""
Validation engine for client imports.

Runs once per job before any record is written. Each mapped value is checked
by declarative field rules (required, identifier checksums, email, postal code,
enumerations, length); duplicate keys are detected both inside the file and
against the tenant's existing records. Nothing here mutates client data.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from registry_app.models import ClientStatus, ClientType
from registry_app.models.exchange import RowErrorKind

from .mapping import ColumnMapping, FieldType, MappingSet, normalize_key
from .parsing import ParsedRow
from .validators import is_valid_email, is_valid_nip, is_valid_postal_code, is_valid_regon


@dataclass(frozen=True)
class RowIssue:
    """A single problem attached to a row (and usually a field)."""

    row_number: int
    field_name: str | None
    error_kind: RowErrorKind
    message: str
    raw_value: str | None = None


@dataclass(frozen=True)
class DuplicateEntry:
    """
    A row whose key was already seen.

    ``exists_in_file`` marks repeats of an earlier row in the same file;
    ``exists_in_db`` marks keys already held by a stored client. Both can hold.
    """

    row_number: int
    key: str
    exists_in_file: bool
    exists_in_db: bool
    existing_record_id: int | None = None
    first_row_number: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "row_number": self.row_number,
            "key": self.key,
            "exists_in_file": self.exists_in_file,
            "exists_in_db": self.exists_in_db,
            "existing_record_id": self.existing_record_id,
            "first_row_number": self.first_row_number,
        }


@dataclass(frozen=True)
class ValidationReport:
    is_valid: bool
    errors: tuple[RowIssue, ...]
    duplicates: tuple[DuplicateEntry, ...]
    valid_records: int
    total_records: int
    missing_columns: tuple[str, ...] = ()
    rule_counts: Mapping[str, int] = field(default_factory=dict)

    @property
    def invalid_rows(self) -> frozenset[int]:
        return frozenset(issue.row_number for issue in self.errors)

    def summary(self) -> dict[str, object]:
        return {
            "is_valid": self.is_valid,
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "error_count": len(self.errors),
            "duplicate_count": len(self.duplicates),
            "duplicates_in_file": sum(1 for entry in self.duplicates if entry.exists_in_file),
            "duplicates_in_db": sum(1 for entry in self.duplicates if entry.exists_in_db),
            "missing_columns": list(self.missing_columns),
            "rule_counts": dict(self.rule_counts),
        }


@dataclass(frozen=True)
class FieldRule:
    """Declarative rule evaluated against one mapped value."""

    code: str
    description: str

    def applies_to(self, mapping: ColumnMapping) -> bool:
        return True

    def evaluate(
        self,
        mapping: ColumnMapping,
        row_number: int,
        raw_value: str | None,
        value: str | None,
    ) -> Iterable[RowIssue]:
        """Return issues for the provided value."""
        raise NotImplementedError


class RequiredRule(FieldRule):
    """Required mappings must resolve to a non-empty value (after defaults)."""

    def __init__(self) -> None:
        super().__init__(code="REQUIRED", description="Required fields must not be empty.")

    def applies_to(self, mapping: ColumnMapping) -> bool:
        return mapping.required

    def evaluate(self, mapping, row_number, raw_value, value):
        if value is not None:
            return []
        return [
            RowIssue(
                row_number=row_number,
                field_name=mapping.target_field,
                error_kind=RowErrorKind.REQUIRED,
                message=f"{mapping.target.label} is required (column '{mapping.source_column}').",
                raw_value=raw_value,
            )
        ]


class FormatRule(FieldRule):
    """Base for rules that check the shape of a present value of a given type."""

    field_type: FieldType = FieldType.TEXT

    def __init__(self, *, code: str, description: str, field_type: FieldType, message: str) -> None:
        super().__init__(code=code, description=description)
        object.__setattr__(self, "field_type", field_type)
        object.__setattr__(self, "message", message)

    def applies_to(self, mapping: ColumnMapping) -> bool:
        return mapping.target.field_type is self.field_type

    def is_valid(self, value: str) -> bool:
        raise NotImplementedError

    def evaluate(self, mapping, row_number, raw_value, value):
        if value is None or self.is_valid(value):
            return []
        return [
            RowIssue(
                row_number=row_number,
                field_name=mapping.target_field,
                error_kind=RowErrorKind.INVALID_FORMAT,
                message=self.message,
                raw_value=raw_value if raw_value not in (None, "") else value,
            )
        ]


class TaxIdRule(FormatRule):
    def __init__(self) -> None:
        super().__init__(
            code="TAX_ID_CHECKSUM",
            description="NIP must be 10 digits with a valid check digit.",
            field_type=FieldType.TAX_ID,
            message="Invalid NIP: expected 10 digits with a valid check digit.",
        )

    def is_valid(self, value: str) -> bool:
        return is_valid_nip(value)


class RegistryIdRule(FormatRule):
    def __init__(self) -> None:
        super().__init__(
            code="REGON_CHECKSUM",
            description="REGON must be 9 or 14 digits with valid check digits.",
            field_type=FieldType.REGISTRY_ID,
            message="Invalid REGON: expected 9 or 14 digits with valid check digits.",
        )

    def is_valid(self, value: str) -> bool:
        return is_valid_regon(value)


class EmailRule(FormatRule):
    def __init__(self) -> None:
        super().__init__(
            code="EMAIL_FORMAT",
            description="Email must be well-formed.",
            field_type=FieldType.EMAIL,
            message="Email is not in a valid format.",
        )

    def is_valid(self, value: str) -> bool:
        return is_valid_email(value)


class PostalCodeRule(FormatRule):
    def __init__(self) -> None:
        super().__init__(
            code="POSTAL_CODE_FORMAT",
            description="Postal code must use the DD-DDD layout.",
            field_type=FieldType.POSTAL_CODE,
            message="Postal code must use the DD-DDD format.",
        )

    def is_valid(self, value: str) -> bool:
        return is_valid_postal_code(value)


class StatusRule(FormatRule):
    def __init__(self) -> None:
        allowed = ", ".join(status.value for status in ClientStatus)
        super().__init__(
            code="STATUS_VALUE",
            description="Status must be a known client status.",
            field_type=FieldType.STATUS,
            message=f"Status must be one of: {allowed}.",
        )

    def is_valid(self, value: str) -> bool:
        return value.strip().lower() in {status.value for status in ClientStatus}


class ClientTypeRule(FormatRule):
    def __init__(self) -> None:
        allowed = ", ".join(kind.value for kind in ClientType)
        super().__init__(
            code="CLIENT_TYPE_VALUE",
            description="Client type must be company or individual.",
            field_type=FieldType.CLIENT_TYPE,
            message=f"Client type must be one of: {allowed}.",
        )

    def is_valid(self, value: str) -> bool:
        return value.strip().lower() in {kind.value for kind in ClientType}


class MaxLengthRule(FieldRule):
    def __init__(self) -> None:
        super().__init__(code="MAX_LENGTH", description="Text values must fit their column.")

    def applies_to(self, mapping: ColumnMapping) -> bool:
        return mapping.target.max_length is not None

    def evaluate(self, mapping, row_number, raw_value, value):
        limit = mapping.target.max_length
        if value is None or limit is None or len(value.strip()) <= limit:
            return []
        return [
            RowIssue(
                row_number=row_number,
                field_name=mapping.target_field,
                error_kind=RowErrorKind.INVALID_FORMAT,
                message=f"{mapping.target.label} must be at most {limit} characters.",
                raw_value=raw_value,
            )
        ]


DEFAULT_RULES: tuple[FieldRule, ...] = (
    RequiredRule(),
    TaxIdRule(),
    RegistryIdRule(),
    EmailRule(),
    PostalCodeRule(),
    StatusRule(),
    ClientTypeRule(),
    MaxLengthRule(),
)


class ValidationEngine:
    """Validate parsed rows against a mapping and the tenant's existing keys."""

    def __init__(
        self,
        mapping_set: MappingSet,
        *,
        key_field: str | None = None,
        existing_keys: Mapping[str, int] | None = None,
        rules: Sequence[FieldRule] | None = None,
    ) -> None:
        self.mapping_set = mapping_set
        self.key_field = key_field
        self.existing_keys = existing_keys or {}
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES

    def _evaluate_row(self, row: ParsedRow) -> tuple[list[RowIssue], Counter]:
        issues: list[RowIssue] = []
        rule_counts: Counter = Counter()
        for mapping in self.mapping_set.mappings:
            raw_value, value = mapping.resolve(row.fields)
            for rule in self.rules:
                if not rule.applies_to(mapping):
                    continue
                found = list(rule.evaluate(mapping, row.row_number, raw_value, value))
                if found:
                    rule_counts[rule.code] += len(found)
                    issues.extend(found)
                    # One issue per field keeps messages actionable.
                    break
        return issues, rule_counts

    def _key_for(self, row: ParsedRow) -> str | None:
        if not self.key_field:
            return None
        mapping = self.mapping_set.for_target(self.key_field)
        if mapping is None:
            return None
        _, value = mapping.resolve(row.fields)
        return normalize_key(self.key_field, value)

    def validate(self, rows: Iterable[ParsedRow], *, headers: Iterable[str] | None = None) -> ValidationReport:
        errors: list[RowIssue] = []
        duplicates: list[DuplicateEntry] = []
        rule_counts: Counter = Counter()
        first_seen: dict[str, int] = {}
        total = 0
        valid = 0

        for row in rows:
            total += 1
            row_issues, row_counts = self._evaluate_row(row)
            rule_counts.update(row_counts)
            if row_issues:
                errors.extend(row_issues)
            else:
                valid += 1

            key = self._key_for(row)
            if key is None:
                continue
            in_file = key in first_seen
            existing_id = self.existing_keys.get(key)
            if in_file or existing_id is not None:
                duplicates.append(
                    DuplicateEntry(
                        row_number=row.row_number,
                        key=key,
                        exists_in_file=in_file,
                        exists_in_db=existing_id is not None,
                        existing_record_id=existing_id,
                        first_row_number=first_seen.get(key),
                    )
                )
            first_seen.setdefault(key, row.row_number)

        missing = tuple(self.mapping_set.missing_columns(headers)) if headers is not None else ()
        return ValidationReport(
            is_valid=not errors,
            errors=tuple(errors),
            duplicates=tuple(duplicates),
            valid_records=valid,
            total_records=total,
            missing_columns=missing,
            rule_counts=dict(rule_counts),
        )
