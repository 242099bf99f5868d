from registry_app.exchange.mapping import MappingSet
from registry_app.exchange.parsing import parse_file
from registry_app.exchange.validation import ValidationEngine
from registry_app.models.exchange import RowErrorKind

from .helpers import build_csv

HEADER = ["Nazwa", "NIP", "Email", "Kod", "Miasto"]


def _validate(rows, mapping, **engine_kwargs):
    parsed = parse_file(build_csv(HEADER, rows), "csv", delimiter=",")
    engine = ValidationEngine(MappingSet.build(mapping), **engine_kwargs)
    return engine.validate(parsed.rows, headers=parsed.headers)


def test_invalid_tax_id_is_reported_on_its_physical_row(standard_mapping):
    report = _validate(
        [
            ["Acme", "5270103391", "biuro@acme.pl", "00-950", "Warszawa"],
            ["Beta", "12345", "beta@example.com", "31-154", "Kraków"],
            ["Gamma", "1234563218", "gamma@example.com", "80-001", "Gdańsk"],
        ],
        standard_mapping,
    )

    assert report.is_valid is False
    assert report.total_records == 3
    assert report.valid_records == 2
    assert len(report.errors) == 1
    issue = report.errors[0]
    assert issue.row_number == 3
    assert issue.field_name == "tax_id"
    assert issue.error_kind is RowErrorKind.INVALID_FORMAT
    assert issue.raw_value == "12345"
    assert report.rule_counts == {"TAX_ID_CHECKSUM": 1}
    assert report.invalid_rows == frozenset({3})


def test_one_issue_per_field_but_many_per_row(standard_mapping):
    report = _validate([["", "5270103391", "not-an-email", "00950", "Warszawa"]], standard_mapping)

    kinds = {(issue.field_name, issue.error_kind) for issue in report.errors}
    assert kinds == {
        ("company_name", RowErrorKind.REQUIRED),
        ("email", RowErrorKind.INVALID_FORMAT),
        ("postal_code", RowErrorKind.INVALID_FORMAT),
    }
    assert report.valid_records == 0
    assert report.rule_counts == {"REQUIRED": 1, "EMAIL_FORMAT": 1, "POSTAL_CODE_FORMAT": 1}


def test_empty_optional_values_are_not_validated(standard_mapping):
    report = _validate([["Acme", "", "", "", ""]], standard_mapping)
    assert report.is_valid is True
    assert report.valid_records == 1


def test_duplicates_in_file_and_in_database(standard_mapping):
    report = _validate(
        [
            ["Acme", "527-010-33-91", "", "", ""],
            ["Acme bis", "5270103391", "", "", ""],
            ["Beta", "1234563218", "", "", ""],
        ],
        standard_mapping,
        key_field="tax_id",
        existing_keys={"1234563218": 42},
    )

    assert report.is_valid is True
    assert [entry.as_dict() for entry in report.duplicates] == [
        {
            "row_number": 3,
            "key": "5270103391",
            "exists_in_file": True,
            "exists_in_db": False,
            "existing_record_id": None,
            "first_row_number": 2,
        },
        {
            "row_number": 4,
            "key": "1234563218",
            "exists_in_file": False,
            "exists_in_db": True,
            "existing_record_id": 42,
            "first_row_number": None,
        },
    ]
    summary = report.summary()
    assert summary["duplicate_count"] == 2
    assert summary["duplicates_in_file"] == 1
    assert summary["duplicates_in_db"] == 1


def test_missing_columns_are_listed_and_required_ones_fail():
    mapping = [
        {"source_column": "Nazwa", "target_field": "company_name", "required": True},
        {"source_column": "Firma", "target_field": "notes"},
        {"source_column": "Typ", "target_field": "client_type", "required": True},
    ]
    report = _validate([["Acme", "5270103391", "", "", ""]], mapping)

    assert report.missing_columns == ("Firma", "Typ")
    assert [(issue.field_name, issue.error_kind) for issue in report.errors] == [
        ("client_type", RowErrorKind.REQUIRED)
    ]


def test_enumerations_and_lengths_are_checked():
    mapping = [
        {"source_column": "Nazwa", "target_field": "company_name"},
        {"source_column": "Miasto", "target_field": "status"},
        {"source_column": "Kod", "target_field": "country"},
    ]
    report = _validate(
        [
            ["Acme", "", "", "PL", "active"],
            ["Beta", "", "", "POL", "dormant"],
        ],
        mapping,
    )

    assert report.valid_records == 1
    assert report.rule_counts == {"STATUS_VALUE": 1, "MAX_LENGTH": 1}
    assert {issue.row_number for issue in report.errors} == {3}
