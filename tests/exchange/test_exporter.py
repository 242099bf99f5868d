import csv
import io

import pytest
from openpyxl import load_workbook

from registry_app.exchange.errors import JobStateError, MappingError, StorageError
from registry_app.exchange.exporter import (
    DEFAULT_EXPORT_FIELDS,
    ExportExecutor,
    ExportFilter,
    validate_export_fields,
    validate_export_sort,
)
from registry_app.models import ClientStatus, ExchangeJobKind, db

from .helpers import build_csv


def _read_csv(payload):
    assert payload.startswith(b"\xef\xbb\xbf")
    return list(csv.reader(io.StringIO(payload[3:].decode("utf-8"), newline="")))


@pytest.fixture
def clients(make_client, make_tag):
    vip = make_tag("vip")
    zeta = make_client("Zeta", tax_id="5270103391", city="Gdańsk", custom_fields={"segment": "retail"})
    alfa = make_client('Alfa "Best", Ltd', tax_id="1234563218", city="Warszawa\nPraga", custom_fields={"segment": "VIP"})
    mid = make_client("Mesa", tax_id="7251801126", status=ClientStatus.INACTIVE)
    alfa.tags.append(vip)
    db.session.commit()
    return {"zeta": zeta, "alfa": alfa, "mid": mid, "vip": vip}


def test_csv_export_uses_bom_crlf_and_quoting(service, clients):
    status = service.start_export(fields=["display_name", "tax_id", "city"])

    assert status.status == "completed"
    assert (status.total, status.processed, status.successful) == (3, 3, 3)
    payload = service.download_export(status.id)
    text = payload[3:].decode("utf-8")
    assert text.startswith("display_name,tax_id,city\r\n")
    assert '"Alfa ""Best"", Ltd",1234563218,"Warszawa\nPraga"\r\n' in text
    assert text.endswith("\r\n")

    rows = _read_csv(payload)
    assert rows[0] == ["display_name", "tax_id", "city"]
    assert [row[0] for row in rows[1:]] == ['Alfa "Best", Ltd', "Mesa", "Zeta"]
    assert rows[2][2] == ""


def test_default_fields_and_result_reference(service, clients, storage):
    status = service.start_export()

    rows = _read_csv(service.download_export(status.id))
    assert tuple(rows[0]) == DEFAULT_EXPORT_FIELDS
    assert status.result_artifact_ref.startswith(f"exports/{clients['alfa'].organization_id}/")
    assert storage.get(status.result_artifact_ref).startswith(b"\xef\xbb\xbf")


def test_export_is_deterministic(service, clients):
    first = service.download_export(service.start_export(fields=["display_name", "status", "tags"]).id)
    second = service.download_export(service.start_export(fields=["display_name", "status", "tags"]).id)
    assert first == second
    assert _read_csv(first)[1] == ['Alfa "Best", Ltd', "active", "vip"]


def test_filters_are_applied(service, clients):
    by_status = service.start_export(fields=["display_name"], filters={"statuses": ["inactive"]})
    by_tag = service.start_export(fields=["display_name"], filters={"tag_ids": [clients["vip"].id]})
    by_search = service.start_export(fields=["display_name"], filters={"search": "gdańsk"})
    by_custom = service.start_export(fields=["display_name"], filters={"custom_fields": {"segment": "vip"}})
    by_date = service.start_export(fields=["display_name"], filters={"created_from": "2000-01-01", "created_to": "2000-12-31"})

    assert _read_csv(service.download_export(by_status.id))[1:] == [["Mesa"]]
    assert _read_csv(service.download_export(by_tag.id))[1:] == [['Alfa "Best", Ltd']]
    assert _read_csv(service.download_export(by_search.id))[1:] == [["Zeta"]]
    assert _read_csv(service.download_export(by_custom.id))[1:] == [['Alfa "Best", Ltd']]
    assert _read_csv(service.download_export(by_date.id)) == [["display_name"]]


def test_export_excludes_other_tenants_and_deleted_clients(service, clients, make_client, other_organization):
    make_client("Foreign", organization_id=other_organization.id)
    clients["mid"].deleted_at = clients["mid"].created_at
    db.session.commit()

    status = service.start_export(fields=["display_name"])

    assert [row[0] for row in _read_csv(service.download_export(status.id))[1:]] == ['Alfa "Best", Ltd', "Zeta"]


def test_sort_descending(service, clients):
    status = service.start_export(fields=["display_name"], sort="-display_name")
    assert [row[0] for row in _read_csv(service.download_export(status.id))[1:]] == ["Zeta", "Mesa", 'Alfa "Best", Ltd']


def test_xlsx_export_reads_back(service, clients):
    status = service.start_export(file_format="xlsx", fields=["display_name", "tax_id", "custom.segment"])

    workbook = load_workbook(io.BytesIO(service.download_export(status.id)), read_only=True)
    sheet = workbook["Clients"]
    rows = [list(row) for row in sheet.iter_rows(values_only=True)]
    workbook.close()

    assert rows[0] == ["display_name", "tax_id", "custom.segment"]
    assert rows[1] == ['Alfa "Best", Ltd', "1234563218", "VIP"]
    assert rows[3] == ["Zeta", "5270103391", "retail"]
    assert status.file_name.endswith(".xlsx")


@pytest.fixture
def structured_segments(service, clients):
    service.execute_bulk_mutation(
        [clients["alfa"].id],
        {"type": "update_field", "field_name": "custom.segments", "value": ["smb", "retail"]},
    )
    service.execute_bulk_mutation(
        [clients["zeta"].id],
        {"type": "update_field", "field_name": "custom.segments", "value": {"tier": "gold", "region": "północ"}},
    )
    return clients


def test_structured_custom_fields_export_as_json_in_xlsx(service, structured_segments):
    status = service.start_export(file_format="xlsx", fields=["display_name", "custom.segments"])

    assert status.status == "completed"
    workbook = load_workbook(io.BytesIO(service.download_export(status.id)), read_only=True)
    rows = [list(row) for row in workbook["Clients"].iter_rows(values_only=True)]
    workbook.close()

    assert rows[1] == ['Alfa "Best", Ltd', '["smb", "retail"]']
    assert rows[2][0] == "Mesa"
    assert rows[3] == ["Zeta", '{"region": "północ", "tier": "gold"}']


def test_structured_custom_fields_export_as_json_in_csv(service, structured_segments):
    status = service.start_export(fields=["display_name", "custom.segments"])

    rows = _read_csv(service.download_export(status.id))
    assert rows[1] == ['Alfa "Best", Ltd', '["smb", "retail"]']
    assert rows[2] == ["Mesa", ""]
    assert rows[3] == ["Zeta", '{"region": "północ", "tier": "gold"}']


def test_invalid_requests_create_no_job(service):
    with pytest.raises(MappingError):
        service.start_export(fields=["display_name", "password"])
    with pytest.raises(MappingError):
        service.start_export(sort="shoe_size")
    with pytest.raises(ValueError):
        service.start_export(filters={"statuses": ["dormant"]})
    with pytest.raises(ValueError):
        service.start_export(file_format="pdf")
    assert service.list_jobs() == ([], 0)


def test_download_requires_completed_export(service, standard_mapping):
    job = service.create_import_job(build_csv(["Nazwa"], [["Acme"]]), "clients.csv", mapping=standard_mapping[:1])
    with pytest.raises(JobStateError):
        service.download_export(job.id)


def test_cancelled_export_produces_no_artifact(service, clients, storage):
    job = service.registry.create(ExchangeJobKind.EXPORT)
    service.cancel_job(job.id)

    summary = ExportExecutor(job.id, storage=storage).run()

    assert summary.status == "cancelled"
    assert summary.result_storage_key is None


def test_storage_failure_fails_job(service, clients, storage, monkeypatch):
    def broken_put(key, data):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "put", broken_put)
    status = service.start_export(fields=["display_name"])

    assert status.status == "failed"
    assert status.error_summary == "disk full"


def test_field_and_sort_validation():
    assert validate_export_fields(None) == DEFAULT_EXPORT_FIELDS
    assert validate_export_fields([" email ", "custom.segment"]) == ("email", "custom.segment")
    with pytest.raises(MappingError):
        validate_export_fields(["email", "email"])
    with pytest.raises(MappingError):
        validate_export_fields(["custom."])
    assert validate_export_sort(None) == "display_name"
    assert validate_export_sort("-created_at") == "-created_at"


def test_export_filter_round_trip():
    export_filter = ExportFilter.coerce(
        {"statuses": ["Active"], "tag_ids": ["3"], "created_to": "2024-05-01", "search": "  acme "}
    )
    assert export_filter.statuses == (ClientStatus.ACTIVE,)
    assert export_filter.tag_ids == (3,)
    assert export_filter.created_to.hour == 23
    assert export_filter.search == "acme"
    assert ExportFilter.coerce(export_filter.to_payload()) == export_filter
    with pytest.raises(ValueError):
        ExportFilter.coerce({"created_from": "01/05/2024"})
