import pytest
from sqlalchemy import func, select, update

from registry_app.exchange.bulk import BulkMutationExecutor, StatusChange, parse_operation
from registry_app.exchange.errors import BulkMutationRequestError, ReversalError
from registry_app.models import BulkMutation, Client, ClientStatus, User, db

from .helpers import FailingAuditSink


@pytest.fixture
def trio(make_client):
    return [
        make_client("Alfa", tax_id="5270103391", city="Warszawa"),
        make_client("Beta", tax_id="1234563218", city="Kraków", status=ClientStatus.SUSPENDED),
        make_client("Gamma", tax_id="7251801126"),
    ]


def _ids(clients):
    return [client.id for client in clients]


def _reload(client):
    db.session.expire_all()
    return db.session.get(Client, client.id)


def _mutation_count():
    return db.session.execute(select(func.count(BulkMutation.id))).scalar_one()


def test_status_change_and_reversal(service, trio, audit_sink):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})

    assert (result.successful, result.failed, result.reversible) == (3, 0, True)
    assert {_reload(client).status for client in trio} == {ClientStatus.INACTIVE}

    reversal = service.reverse_bulk_mutation(result.mutation_id)

    assert (reversal.restored, reversal.failed) == (3, 0)
    assert [_reload(client).status for client in trio] == [
        ClientStatus.ACTIVE,
        ClientStatus.SUSPENDED,
        ClientStatus.ACTIVE,
    ]
    assert audit_sink.actions == ["BULK_UPDATE_STATUS", "BULK_REVERSE_MUTATION"]
    assert audit_sink.events[0].details["client_ids"] == _ids(trio)


def test_reversal_happens_at_most_once(service, trio):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "archived"})
    service.reverse_bulk_mutation(result.mutation_id)

    with pytest.raises(ReversalError, match="already reversed"):
        service.reverse_bulk_mutation(result.mutation_id)

    mutation = db.session.get(BulkMutation, result.mutation_id)
    assert mutation.reversed_at is not None
    assert mutation.reversed_by_user_id == service.user_id


def test_add_and_remove_tags_with_reversal(service, trio, make_tag):
    vip, partner = make_tag("vip"), make_tag("partner")
    trio[0].tags.append(partner)
    db.session.commit()

    added = service.execute_bulk_mutation(_ids(trio), {"type": "add_tags", "tag_ids": [vip.id, partner.id]})
    assert added.successful == 3
    assert [tag.name for tag in _reload(trio[0]).tags] == ["partner", "vip"]
    assert [tag.name for tag in _reload(trio[2]).tags] == ["partner", "vip"]

    removed = service.execute_bulk_mutation(_ids(trio[:2]), {"type": "remove_tags", "tag_ids": [partner.id]})
    assert removed.successful == 2
    assert [tag.name for tag in _reload(trio[0]).tags] == ["vip"]

    service.reverse_bulk_mutation(removed.mutation_id)
    assert [tag.name for tag in _reload(trio[0]).tags] == ["partner", "vip"]

    service.reverse_bulk_mutation(added.mutation_id)
    assert [tag.name for tag in _reload(trio[0]).tags] == ["partner"]
    assert _reload(trio[2]).tags == []


def test_unknown_or_foreign_tags_are_rejected(service, trio, make_tag, other_organization):
    foreign = make_tag("foreign", organization_id=other_organization.id)

    with pytest.raises(BulkMutationRequestError, match="Unknown tag"):
        service.execute_bulk_mutation(_ids(trio), {"type": "add_tags", "tag_ids": [foreign.id]})
    with pytest.raises(BulkMutationRequestError):
        service.execute_bulk_mutation(_ids(trio), {"type": "add_tags", "tag_ids": []})
    assert _mutation_count() == 0


def test_update_field_and_reversal(service, trio):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "update_field", "field_name": "city", "value": "Poznań"})
    assert result.successful == 3
    assert {_reload(client).city for client in trio} == {"Poznań"}

    service.reverse_bulk_mutation(result.mutation_id)
    assert [_reload(client).city for client in trio] == ["Warszawa", "Kraków", None]


def test_update_company_name_refreshes_display_name(service, trio):
    result = service.execute_bulk_mutation(_ids(trio[:1]), {"type": "update_field", "field_name": "company_name", "value": "Alfa Nova"})
    assert _reload(trio[0]).display_name == "Alfa Nova"

    service.reverse_bulk_mutation(result.mutation_id)
    assert _reload(trio[0]).display_name == "Alfa"


def test_update_custom_field_and_reversal(service, trio):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "update_field", "field_name": "custom.segment", "value": "smb"})
    assert _reload(trio[1]).custom_fields == {"segment": "smb"}

    service.reverse_bulk_mutation(result.mutation_id)
    assert _reload(trio[1]).custom_fields == {}


@pytest.mark.parametrize(
    "operation, message",
    [
        ({"type": "update_field", "field_name": "status", "value": "active"}, "cannot be bulk updated"),
        ({"type": "update_field", "field_name": "fax", "value": "1"}, "Unknown target field"),
        ({"type": "update_field", "field_name": "tax_id", "value": "12345"}, "Invalid NIP"),
        ({"type": "update_field", "field_name": "tax_id", "value": "527010339¹"}, "Invalid NIP"),
        ({"type": "update_field", "field_name": "regon", "value": "12345678²"}, "Invalid REGON"),
        ({"type": "update_field", "field_name": "postal_code", "value": "٠٠-950"}, "DD-DDD"),
        ({"type": "update_field", "field_name": "postal_code", "value": "00950"}, "DD-DDD"),
        ({"type": "update_field", "field_name": "country", "value": ""}, "cannot be cleared"),
        ({"type": "update_field", "field_name": "country", "value": "POL"}, "exceeds"),
        ({"type": "status_change", "new_status": "dormant"}, "Unknown client status"),
        ({"type": "status_change"}, "missing 'new_status'"),
        ({"type": "merge"}, "Unknown bulk operation type"),
        ({"type": "assign_manager"}, "missing 'manager_id'"),
    ],
)
def test_invalid_operations_change_nothing(service, trio, operation, message):
    with pytest.raises(BulkMutationRequestError, match=message):
        service.execute_bulk_mutation(_ids(trio), operation)
    assert _mutation_count() == 0
    assert _reload(trio[0]).version == 1


def test_assign_manager_and_reversal(service, trio, manager_user):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "assign_manager", "manager_id": manager_user.id})
    assert {_reload(client).manager_id for client in trio} == {manager_user.id}

    cleared = service.execute_bulk_mutation(_ids(trio[:1]), {"type": "assign_manager", "manager_id": None})
    assert _reload(trio[0]).manager_id is None

    service.reverse_bulk_mutation(cleared.mutation_id)
    service.reverse_bulk_mutation(result.mutation_id)
    assert {_reload(client).manager_id for client in trio} == {None}


def test_manager_must_be_active_member_of_tenant(service, trio, manager_user, other_organization):
    outsider = User(
        username="outsider",
        email="outsider@example.com",
        first_name="Oskar",
        last_name="Outsider",
        organization_id=other_organization.id,
        is_active=True,
    )
    db.session.add(outsider)
    manager_user.is_active = False
    db.session.commit()

    for manager_id in (outsider.id, manager_user.id, 999999):
        with pytest.raises(BulkMutationRequestError, match="not an active user"):
            service.execute_bulk_mutation(_ids(trio), {"type": "assign_manager", "manager_id": manager_id})


def test_soft_delete_is_reversible(service, trio, organization):
    result = service.execute_bulk_mutation(_ids(trio[:2]), {"type": "batch_delete"})

    assert result.reversible is True
    assert _reload(trio[0]).deleted_at is not None
    assert service.execute_bulk_mutation(_ids(trio[2:]), {"type": "status_change", "new_status": "active"}).successful == 1

    service.reverse_bulk_mutation(result.mutation_id)
    assert _reload(trio[0]).deleted_at is None
    assert _reload(trio[1]).deleted_at is None


def test_soft_deleted_clients_cannot_be_targeted(service, trio):
    service.execute_bulk_mutation(_ids(trio[:1]), {"type": "batch_delete"})
    with pytest.raises(BulkMutationRequestError, match="not found"):
        service.execute_bulk_mutation(_ids(trio[:1]), {"type": "status_change", "new_status": "active"})


def test_hard_delete_is_permanent(service, trio, audit_sink, make_tag):
    tag = make_tag("vip")
    trio[0].tags.append(tag)
    db.session.commit()

    result = service.execute_bulk_mutation(_ids(trio[:2]), {"type": "batch_delete", "hard": True})

    assert (result.successful, result.reversible) == (2, False)
    assert db.session.get(Client, trio[2].id) is not None
    remaining = db.session.execute(select(func.count(Client.id))).scalar_one()
    assert remaining == 1
    assert audit_sink.actions == ["BULK_DELETE_CLIENTS"]
    with pytest.raises(ReversalError, match="not reversible"):
        service.reverse_bulk_mutation(result.mutation_id)


def test_foreign_id_aborts_whole_request(service, trio, make_client, other_organization):
    foreign = make_client("Foreign", organization_id=other_organization.id)

    with pytest.raises(BulkMutationRequestError) as excinfo:
        service.execute_bulk_mutation([*_ids(trio), foreign.id], {"type": "batch_delete", "hard": True})

    assert excinfo.value.client_ids == (foreign.id,)
    assert db.session.execute(select(func.count(Client.id))).scalar_one() == 4
    assert _mutation_count() == 0


def test_target_limits(app, organization, trio):
    executor = BulkMutationExecutor(organization.id, max_targets=2, max_hard_delete=1)

    with pytest.raises(BulkMutationRequestError, match="At most 2"):
        executor.execute(_ids(trio), {"type": "status_change", "new_status": "inactive"})
    with pytest.raises(BulkMutationRequestError, match="At most 1"):
        executor.execute(_ids(trio[:2]), {"type": "batch_delete", "hard": True})
    with pytest.raises(BulkMutationRequestError, match="At least one"):
        executor.execute([], {"type": "status_change", "new_status": "inactive"})
    with pytest.raises(BulkMutationRequestError, match="integers"):
        executor.execute(["abc"], {"type": "status_change", "new_status": "inactive"})


def test_repeated_ids_are_applied_once(service, trio):
    result = service.execute_bulk_mutation([trio[0].id, str(trio[0].id)], {"type": "status_change", "new_status": "inactive"})
    assert result.successful == 1
    assert db.session.get(BulkMutation, result.mutation_id).target_ids_json == [trio[0].id]


def test_version_conflict_fails_only_that_client(service, trio, monkeypatch):
    conflicted = trio[1].id
    original_apply = StatusChange.apply

    def apply(self, client, store):
        if client.id == conflicted:
            db.session.execute(
                update(Client)
                .where(Client.id == conflicted)
                .values(version=Client.version + 1)
                .execution_options(synchronize_session=False)
            )
        original_apply(self, client, store)

    monkeypatch.setattr(StatusChange, "apply", apply)
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})

    assert (result.successful, result.failed) == (2, 1)
    assert result.errors[0]["client_id"] == conflicted
    assert _reload(trio[1]).status is ClientStatus.SUSPENDED

    mutation = db.session.get(BulkMutation, result.mutation_id)
    assert set(mutation.snapshot_json) == {str(trio[0].id), str(trio[2].id)}


def test_mutation_with_no_successes_is_not_reversible(service, trio, monkeypatch):
    def apply(self, client, store):
        raise ValueError("rejected")

    monkeypatch.setattr(StatusChange, "apply", apply)
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})

    assert (result.successful, result.failed, result.reversible) == (0, 3, False)
    with pytest.raises(ReversalError):
        service.reverse_bulk_mutation(result.mutation_id)


def test_reversal_reports_clients_removed_since(service, trio):
    removed_id = trio[0].id
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})
    service.execute_bulk_mutation([removed_id], {"type": "batch_delete", "hard": True})

    reversal = service.reverse_bulk_mutation(result.mutation_id)

    assert (reversal.restored, reversal.failed) == (2, 1)
    assert reversal.as_dict()["errors"] == [{"client_id": removed_id, "error": "Client no longer exists."}]


def test_reversal_is_tenant_scoped(service, trio, other_organization):
    result = service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})
    outsider = BulkMutationExecutor(other_organization.id)
    with pytest.raises(ReversalError, match="not found"):
        outsider.reverse(result.mutation_id)


def test_list_bulk_mutations(service, trio):
    service.execute_bulk_mutation(_ids(trio), {"type": "status_change", "new_status": "inactive"})
    service.execute_bulk_mutation(_ids(trio), {"type": "update_field", "field_name": "city", "value": "Lublin"})

    mutations, total = service.list_bulk_mutations()
    assert total == 2
    only_status, total = service.list_bulk_mutations(operation_type="status_change")
    assert total == 1
    assert only_status[0].operation_json == {"type": "status_change", "new_status": "inactive", "reason": None}
    with pytest.raises(BulkMutationRequestError):
        service.list_bulk_mutations(operation_type="merge")


def test_failing_audit_sink_does_not_undo_mutation(organization, trio):
    executor = BulkMutationExecutor(organization.id, audit_sink=FailingAuditSink())
    result = executor.execute(_ids(trio), {"type": "status_change", "new_status": "inactive"})
    assert result.successful == 3
    assert _reload(trio[0]).status is ClientStatus.INACTIVE


def test_parse_operation_round_trip():
    operation = parse_operation({"type": "ADD_TAGS", "tag_ids": ["3", 3, 4]})
    assert operation.tag_ids == (3, 4)
    assert parse_operation(operation.to_payload()) == operation
    with pytest.raises(BulkMutationRequestError):
        parse_operation(["status_change"])
