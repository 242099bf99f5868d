"""
Bulk mutations over an explicit set of clients.

Operations are a closed set of frozen dataclasses keyed by a ``type`` tag.
A request is checked in full before anything changes: the id list, tenant
ownership of every id and the operation's own parameters. Each client is then
mutated in its own savepoint so a version conflict on one id is that id's
failure only. Reversible operations keep the prior value of every field they
touch, and a mutation can be reversed exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config.monitoring import ExchangeMonitoring
from registry_app.models import Client, ClientStatus, ClientType, db
from registry_app.models.exchange import BulkMutation, BulkOperationType

from .audit import AuditEvent, AuditSink, LoggingAuditSink, emit_safely
from .errors import BulkMutationRequestError, MappingError, ReversalError
from .mapping import CUSTOM_FIELD_PREFIX, FieldType, resolve_target_field
from .store import UPDATABLE_FIELDS, ClientStore, coerce_field_value
from .validators import is_valid_email, is_valid_nip, is_valid_postal_code, is_valid_regon

DEFAULT_MAX_TARGETS = 100
DEFAULT_MAX_HARD_DELETE = 50
_NON_NULLABLE_FIELDS = frozenset({"client_type", "country"})

_FORMAT_CHECKS = {
    FieldType.TAX_ID: (is_valid_nip, "Invalid NIP."),
    FieldType.REGISTRY_ID: (is_valid_regon, "Invalid REGON."),
    FieldType.EMAIL: (is_valid_email, "Invalid email address."),
    FieldType.POSTAL_CODE: (is_valid_postal_code, "Postal code must use the DD-DDD format."),
}


def _serialize(value: Any) -> Any:
    if isinstance(value, (ClientStatus, ClientType)):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _require(payload: Mapping[str, Any], key: str) -> Any:
    if key not in payload or payload[key] is None:
        raise BulkMutationRequestError(f"Operation is missing '{key}'.")
    return payload[key]


def _coerce_id_list(values: Any, label: str) -> tuple[int, ...]:
    if not isinstance(values, (list, tuple)) or not values:
        raise BulkMutationRequestError(f"{label} must be a non-empty list.")
    try:
        return tuple(dict.fromkeys(int(value) for value in values))
    except (TypeError, ValueError):
        raise BulkMutationRequestError(f"{label} must contain integer ids.") from None


class BulkOperation:
    """Behaviour shared by every bulk operation variant."""

    type: ClassVar[BulkOperationType]
    audit_action: ClassVar[str]

    @property
    def reversible(self) -> bool:
        return True

    def validate(self, store: ClientStore) -> None:
        """Raise ``BulkMutationRequestError`` when parameters are unusable for this tenant."""

    def snapshot(self, client: Client) -> dict[str, Any]:
        raise NotImplementedError

    def apply(self, client: Client, store: ClientStore) -> None:
        raise NotImplementedError

    def restore(self, client: Client, prior: Mapping[str, Any], store: ClientStore) -> None:
        raise NotImplementedError

    def params(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.params()}


@dataclass(frozen=True)
class StatusChange(BulkOperation):
    new_status: ClientStatus
    reason: str | None = None

    type: ClassVar[BulkOperationType] = BulkOperationType.STATUS_CHANGE
    audit_action: ClassVar[str] = "BULK_UPDATE_STATUS"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StatusChange":
        raw = _require(payload, "new_status")
        try:
            status = raw if isinstance(raw, ClientStatus) else ClientStatus(str(raw).strip().lower())
        except ValueError:
            raise BulkMutationRequestError(f"Unknown client status '{raw}'.") from None
        return cls(new_status=status, reason=payload.get("reason"))

    def snapshot(self, client):
        return {"status": _serialize(client.status)}

    def apply(self, client, store):
        client.status = self.new_status

    def restore(self, client, prior, store):
        client.status = ClientStatus(prior["status"])

    def params(self):
        return {"new_status": self.new_status.value, "reason": self.reason}


@dataclass(frozen=True)
class AddTags(BulkOperation):
    tag_ids: tuple[int, ...]

    type: ClassVar[BulkOperationType] = BulkOperationType.ADD_TAGS
    audit_action: ClassVar[str] = "BULK_ADD_TAGS"

    @classmethod
    def from_payload(cls, payload):
        return cls(tag_ids=_coerce_id_list(_require(payload, "tag_ids"), "tag_ids"))

    def validate(self, store):
        known = store.get_tags(self.tag_ids)
        missing = [tag_id for tag_id in self.tag_ids if tag_id not in known]
        if missing:
            raise BulkMutationRequestError(f"Unknown tag id(s): {', '.join(map(str, missing))}.")

    def snapshot(self, client):
        return {"tag_ids": sorted(tag.id for tag in client.tags)}

    def apply(self, client, store):
        current = {tag.id for tag in client.tags}
        for tag_id, tag in store.get_tags(self.tag_ids).items():
            if tag_id not in current:
                client.tags.append(tag)

    def restore(self, client, prior, store):
        tags = store.get_tags(prior.get("tag_ids") or ())
        client.tags = [tags[tag_id] for tag_id in prior.get("tag_ids") or () if tag_id in tags]

    def params(self):
        return {"tag_ids": list(self.tag_ids)}


@dataclass(frozen=True)
class RemoveTags(AddTags):
    type: ClassVar[BulkOperationType] = BulkOperationType.REMOVE_TAGS
    audit_action: ClassVar[str] = "BULK_REMOVE_TAGS"

    def apply(self, client, store):
        removed = set(self.tag_ids)
        client.tags = [tag for tag in client.tags if tag.id not in removed]


@dataclass(frozen=True)
class UpdateField(BulkOperation):
    field_name: str
    value: Any = None

    type: ClassVar[BulkOperationType] = BulkOperationType.UPDATE_FIELD
    audit_action: ClassVar[str] = "BULK_UPDATE_FIELD"

    @classmethod
    def from_payload(cls, payload):
        field_name = str(_require(payload, "field_name")).strip()
        return cls(field_name=field_name, value=payload.get("value"))

    @property
    def custom_key(self) -> str | None:
        if self.field_name.startswith(CUSTOM_FIELD_PREFIX):
            return self.field_name[len(CUSTOM_FIELD_PREFIX) :]
        return None

    def validate(self, store):
        try:
            target = resolve_target_field(self.field_name)
        except MappingError as exc:
            raise BulkMutationRequestError(str(exc)) from None
        if not target.is_custom and target.name not in UPDATABLE_FIELDS:
            raise BulkMutationRequestError(f"Field '{self.field_name}' cannot be bulk updated.")
        if target.is_custom:
            return
        try:
            coerced = coerce_field_value(target.name, self.value)
        except ValueError as exc:
            raise BulkMutationRequestError(str(exc)) from None
        if coerced is None and target.name in _NON_NULLABLE_FIELDS:
            raise BulkMutationRequestError(f"{target.label} cannot be cleared.")
        check = _FORMAT_CHECKS.get(target.field_type)
        if check is not None and coerced is not None and not check[0](str(self.value)):
            raise BulkMutationRequestError(check[1])

    def snapshot(self, client):
        if self.custom_key is not None:
            return {"value": (client.custom_fields or {}).get(self.custom_key)}
        return {"value": _serialize(getattr(client, self.field_name))}

    def apply(self, client, store):
        store.apply_values(client, {self.field_name: self.value})

    def restore(self, client, prior, store):
        value = prior.get("value")
        if self.custom_key is not None:
            merged = dict(client.custom_fields or {})
            if value is None:
                merged.pop(self.custom_key, None)
            else:
                merged[self.custom_key] = value
            client.custom_fields = merged
            return
        setattr(client, self.field_name, coerce_field_value(self.field_name, value))
        client.refresh_display_name()

    def params(self):
        return {"field_name": self.field_name, "value": self.value}


@dataclass(frozen=True)
class AssignManager(BulkOperation):
    manager_id: int | None

    type: ClassVar[BulkOperationType] = BulkOperationType.ASSIGN_MANAGER
    audit_action: ClassVar[str] = "BULK_ASSIGN_OWNER"

    @classmethod
    def from_payload(cls, payload):
        if "manager_id" not in payload:
            raise BulkMutationRequestError("Operation is missing 'manager_id'.")
        raw = payload.get("manager_id")
        if raw is None:
            return cls(manager_id=None)
        try:
            return cls(manager_id=int(raw))
        except (TypeError, ValueError):
            raise BulkMutationRequestError("manager_id must be an integer.") from None

    def validate(self, store):
        if self.manager_id is None:
            return
        manager = store.get_user(self.manager_id)
        if manager is None or not manager.is_active:
            raise BulkMutationRequestError(f"Manager {self.manager_id} is not an active user of this organization.")

    def snapshot(self, client):
        return {"manager_id": client.manager_id}

    def apply(self, client, store):
        client.manager_id = self.manager_id

    def restore(self, client, prior, store):
        client.manager_id = prior.get("manager_id")

    def params(self):
        return {"manager_id": self.manager_id}


@dataclass(frozen=True)
class BatchDelete(BulkOperation):
    hard: bool = False

    type: ClassVar[BulkOperationType] = BulkOperationType.BATCH_DELETE
    audit_action: ClassVar[str] = "BULK_ARCHIVE_CLIENTS"

    @classmethod
    def from_payload(cls, payload):
        return cls(hard=bool(payload.get("hard", False)))

    @property
    def reversible(self) -> bool:
        return not self.hard

    @property
    def action(self) -> str:
        return "BULK_DELETE_CLIENTS" if self.hard else self.audit_action

    def snapshot(self, client):
        return {"deleted_at": None}

    def apply(self, client, store):
        if self.hard:
            store.hard_delete(client)
        else:
            store.soft_delete(client)

    def restore(self, client, prior, store):
        client.deleted_at = None

    def params(self):
        return {"hard": self.hard}


OPERATION_TYPES: dict[BulkOperationType, type[BulkOperation]] = {
    cls.type: cls for cls in (StatusChange, AddTags, RemoveTags, UpdateField, AssignManager, BatchDelete)
}


def parse_operation(payload: Mapping[str, Any] | BulkOperation) -> BulkOperation:
    """Build an operation from a ``{"type": ..., ...}`` payload."""
    if isinstance(payload, BulkOperation):
        return payload
    if not isinstance(payload, Mapping):
        raise BulkMutationRequestError("Operation must be an object with a 'type'.")
    raw_type = payload.get("type")
    try:
        operation_type = BulkOperationType(str(raw_type).strip().lower())
    except ValueError:
        raise BulkMutationRequestError(f"Unknown bulk operation type '{raw_type}'.") from None
    return OPERATION_TYPES[operation_type].from_payload(payload)


def _audit_action(operation: BulkOperation) -> str:
    return getattr(operation, "action", operation.audit_action)


@dataclass(frozen=True)
class BulkMutationResult:
    mutation_id: int
    successful: int
    failed: int
    errors: tuple[dict[str, Any], ...] = ()
    reversible: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
            "reversible": self.reversible,
        }


@dataclass(frozen=True)
class ReversalResult:
    mutation_id: int
    restored: int
    failed: int
    errors: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "restored": self.restored,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class BulkMutationExecutor:
    """Execute, reverse and list bulk mutations for one organization."""

    def __init__(
        self,
        organization_id: int,
        *,
        user_id: int | None = None,
        session: Session | None = None,
        audit_sink: AuditSink | None = None,
        max_targets: int | None = None,
        max_hard_delete: int | None = None,
    ) -> None:
        self.organization_id = organization_id
        self.user_id = user_id
        self.session = session or db.session
        self.store = ClientStore(organization_id, session=self.session)
        self.audit_sink = audit_sink if audit_sink is not None else LoggingAuditSink()
        self.max_targets = max_targets or current_app.config.get("EXCHANGE_BULK_MAX_TARGETS", DEFAULT_MAX_TARGETS)
        self.max_hard_delete = max_hard_delete or current_app.config.get(
            "EXCHANGE_BULK_MAX_HARD_DELETE", DEFAULT_MAX_HARD_DELETE
        )

    # Preconditions --------------------------------------------------------

    def _resolve_targets(
        self,
        client_ids: Iterable[Any],
        operation: BulkOperation,
    ) -> tuple[list[int], dict[int, Client]]:
        try:
            ids = list(dict.fromkeys(int(value) for value in client_ids))
        except (TypeError, ValueError):
            raise BulkMutationRequestError("Client ids must be integers.") from None
        if not ids:
            raise BulkMutationRequestError("At least one client id is required.")
        limit = self.max_hard_delete if isinstance(operation, BatchDelete) and operation.hard else self.max_targets
        if len(ids) > limit:
            raise BulkMutationRequestError(f"At most {limit} clients can be targeted by this operation.")

        clients = self.store.get_many(ids)
        missing = [client_id for client_id in ids if client_id not in clients]
        if missing:
            raise BulkMutationRequestError(
                f"{len(missing)} client(s) not found in this organization.",
                client_ids=missing,
            )
        return ids, clients

    # Execution ------------------------------------------------------------

    def execute(self, client_ids: Sequence[Any], operation: Mapping[str, Any] | BulkOperation) -> BulkMutationResult:
        """
        Apply ``operation`` to every id.

        Raises:
            BulkMutationRequestError: Any precondition failed; nothing was changed.
        """
        op = parse_operation(operation)
        ids, clients = self._resolve_targets(client_ids, op)
        op.validate(self.store)

        snapshot: dict[str, dict[str, Any]] = {}
        errors: list[dict[str, Any]] = []
        successful = 0
        for client_id in ids:
            client = clients[client_id]
            prior = op.snapshot(client) if op.reversible else None
            try:
                with self.session.begin_nested():
                    op.apply(client, self.store)
                    self.session.flush()
            except (StaleDataError, SQLAlchemyError, ValueError) as exc:
                errors.append({"client_id": client_id, "error": str(exc)})
                continue
            if prior is not None:
                snapshot[str(client_id)] = prior
            successful += 1

        mutation = BulkMutation(
            organization_id=self.organization_id,
            operation_type=op.type,
            operation_json=op.to_payload(),
            target_ids_json=ids,
            snapshot_json=snapshot if op.reversible else None,
            errors_json=errors or None,
            successful_count=successful,
            failed_count=len(errors),
            reversible=op.reversible and successful > 0,
            created_by_user_id=self.user_id,
        )
        self.session.add(mutation)
        self.session.commit()

        ExchangeMonitoring.record_bulk_mutation(operation=op.type.value, successful=successful, failed=len(errors))
        self._audit(
            _audit_action(op),
            mutation,
            {"operation": op.to_payload(), "client_ids": ids, "successful": successful, "failed": len(errors)},
        )
        current_app.logger.info(
            "Bulk mutation executed",
            extra={
                "bulk_mutation_id": mutation.id,
                "bulk_operation": op.type.value,
                "bulk_successful": successful,
                "bulk_failed": len(errors),
                "exchange_organization_id": self.organization_id,
            },
        )
        return BulkMutationResult(
            mutation_id=mutation.id,
            successful=successful,
            failed=len(errors),
            errors=tuple(errors),
            reversible=mutation.reversible,
        )

    # Reversal -------------------------------------------------------------

    def get(self, mutation_id: int) -> BulkMutation | None:
        mutation = self.session.get(BulkMutation, mutation_id)
        if mutation is None or mutation.organization_id != self.organization_id:
            return None
        return mutation

    def reverse(self, mutation_id: int) -> ReversalResult:
        """
        Restore every snapshotted client to its prior values.

        Raises:
            ReversalError: The mutation is missing, not reversible or already reversed.
        """
        mutation = self.get(mutation_id)
        if mutation is None:
            raise ReversalError(mutation_id, f"Bulk mutation {mutation_id} not found.")
        if not mutation.reversible:
            raise ReversalError(mutation_id, f"Bulk mutation {mutation_id} is not reversible.")
        if mutation.reversed_at is not None:
            raise ReversalError(mutation_id, f"Bulk mutation {mutation_id} was already reversed.")

        claimed = self.session.execute(
            update(BulkMutation)
            .where(BulkMutation.id == mutation_id, BulkMutation.reversed_at.is_(None))
            .values(reversed_at=datetime.now(timezone.utc), reversed_by_user_id=self.user_id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            raise ReversalError(mutation_id, f"Bulk mutation {mutation_id} was already reversed.")

        op = parse_operation(mutation.operation_json)
        snapshot = mutation.snapshot_json or {}
        clients = self.store.get_many((int(key) for key in snapshot), include_deleted=True)
        errors: list[dict[str, Any]] = []
        restored = 0
        for key, prior in snapshot.items():
            client = clients.get(int(key))
            if client is None:
                errors.append({"client_id": int(key), "error": "Client no longer exists."})
                continue
            try:
                with self.session.begin_nested():
                    op.restore(client, prior, self.store)
                    self.session.flush()
            except (StaleDataError, SQLAlchemyError, ValueError) as exc:
                errors.append({"client_id": int(key), "error": str(exc)})
                continue
            restored += 1
        self.session.commit()
        self.session.refresh(mutation)

        self._audit(
            "BULK_REVERSE_MUTATION",
            mutation,
            {"operation": mutation.operation_json, "restored": restored, "failed": len(errors)},
        )
        current_app.logger.info(
            "Bulk mutation reversed",
            extra={"bulk_mutation_id": mutation_id, "bulk_restored": restored, "bulk_failed": len(errors)},
        )
        return ReversalResult(mutation_id=mutation_id, restored=restored, failed=len(errors), errors=tuple(errors))

    # Listing --------------------------------------------------------------

    def list(
        self,
        *,
        page: int = 1,
        page_size: int = 25,
        operation_type: BulkOperationType | str | None = None,
    ) -> tuple[list[BulkMutation], int]:
        conditions = [BulkMutation.organization_id == self.organization_id]
        if operation_type:
            try:
                conditions.append(BulkMutation.operation_type == BulkOperationType(operation_type))
            except ValueError:
                raise BulkMutationRequestError(f"Unknown bulk operation type '{operation_type}'.") from None
        page = max(int(page), 1)
        page_size = max(min(int(page_size), 100), 1)
        total = int(self.session.execute(select(func.count(BulkMutation.id)).where(*conditions)).scalar_one())
        stmt = (
            select(BulkMutation)
            .where(*conditions)
            .order_by(BulkMutation.created_at.desc(), BulkMutation.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.execute(stmt).scalars()), total

    def _audit(self, action: str, mutation: BulkMutation, details: Mapping[str, Any]) -> None:
        emit_safely(
            self.audit_sink,
            AuditEvent(
                action=action,
                organization_id=self.organization_id,
                user_id=self.user_id,
                entity_type="bulk_mutation",
                entity_id=mutation.id,
                details=details,
            ),
        )
