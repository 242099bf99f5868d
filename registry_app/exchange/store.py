"""
Tenant-scoped persistence helpers for client records.

Every query issued here is restricted to one organization; callers never see
or touch another tenant's clients, tags or users.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from registry_app.models import Client, ClientStatus, ClientType, Tag, User, db

from .mapping import CUSTOM_FIELD_PREFIX, FieldType, TARGET_FIELDS, normalize_key, resolve_target_field
from .validators import strip_formatting

DEFAULT_SORT = "display_name"

VALID_SORT_FIELDS = {
    "display_name": Client.display_name,
    "created_at": Client.created_at,
    "updated_at": Client.updated_at,
    "tax_id": Client.tax_id,
    "city": Client.city,
    "status": Client.status,
}

# Fields a bulk UPDATE_FIELD may set; status and manager have dedicated operations.
UPDATABLE_FIELDS = frozenset(name for name in TARGET_FIELDS if name != "status")


def coerce_field_value(field_name: str, value: Any) -> Any:
    """
    Convert a resolved string into the value stored on ``Client``.

    Raises:
        ValueError: The value does not fit the target field.
    """
    if value is None:
        return None
    target = resolve_target_field(field_name)
    if target.is_custom:
        return value
    text = str(value).strip()
    if text == "":
        return None
    if target.field_type is FieldType.STATUS:
        return ClientStatus(text.lower())
    if target.field_type is FieldType.CLIENT_TYPE:
        return ClientType(text.lower())
    if target.field_type in (FieldType.TAX_ID, FieldType.REGISTRY_ID):
        return strip_formatting(text)
    if field_name == "country":
        text = text.upper()
    if target.max_length is not None and len(text) > target.max_length:
        raise ValueError(f"{target.label} exceeds {target.max_length} characters.")
    return text


def sort_clause(sort: str | None) -> list:
    resolved = sort or DEFAULT_SORT
    key = resolved.lstrip("-")
    if key not in VALID_SORT_FIELDS:
        raise ValueError(f"Unsupported sort field '{key}'.")
    column = VALID_SORT_FIELDS[key]
    if resolved.startswith("-"):
        return [column.desc(), Client.id.desc()]
    return [column.asc(), Client.id.asc()]


class ClientStore:
    """Create, update, delete and query clients of one organization."""

    def __init__(self, organization_id: int, session: Session | None = None) -> None:
        self.organization_id = organization_id
        self.session = session or db.session

    def _select(self, *, include_deleted: bool = False):
        stmt = select(Client).where(Client.organization_id == self.organization_id)
        if not include_deleted:
            stmt = stmt.where(Client.deleted_at.is_(None))
        return stmt

    def get(self, client_id: int, *, include_deleted: bool = False) -> Client | None:
        stmt = self._select(include_deleted=include_deleted).where(Client.id == client_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_many(self, client_ids: Iterable[int], *, include_deleted: bool = False) -> dict[int, Client]:
        ids = list(client_ids)
        if not ids:
            return {}
        stmt = self._select(include_deleted=include_deleted).where(Client.id.in_(ids))
        return {client.id: client for client in self.session.execute(stmt).scalars()}

    def count(self) -> int:
        stmt = select(func.count(Client.id)).where(
            Client.organization_id == self.organization_id,
            Client.deleted_at.is_(None),
        )
        return int(self.session.execute(stmt).scalar_one())

    # Keys -----------------------------------------------------------------

    def key_map(self, key_field: str) -> dict[str, int]:
        """
        Map every normalized key value to the id of the oldest client holding it.
        """
        target = resolve_target_field(key_field)
        mapping: dict[str, int] = {}
        if target.is_custom:
            stmt = (
                select(Client.id, Client.custom_fields)
                .where(Client.organization_id == self.organization_id, Client.deleted_at.is_(None))
                .order_by(Client.id)
            )
            for client_id, custom_fields in self.session.execute(stmt):
                raw = (custom_fields or {}).get(target.custom_key)
                key = normalize_key(key_field, None if raw is None else str(raw))
                if key is not None:
                    mapping.setdefault(key, client_id)
            return mapping

        column = getattr(Client, target.name)
        stmt = (
            select(Client.id, column)
            .where(
                Client.organization_id == self.organization_id,
                Client.deleted_at.is_(None),
                column.is_not(None),
            )
            .order_by(Client.id)
        )
        for client_id, raw in self.session.execute(stmt):
            value = raw.value if isinstance(raw, (ClientStatus, ClientType)) else raw
            key = normalize_key(key_field, None if value is None else str(value))
            if key is not None:
                mapping.setdefault(key, client_id)
        return mapping

    def find_by_key(self, key_field: str, value: str | None) -> Client | None:
        key = normalize_key(key_field, value)
        if key is None:
            return None
        client_id = self.key_map(key_field).get(key)
        return self.get(client_id) if client_id is not None else None

    # Writes ---------------------------------------------------------------

    def apply_values(self, client: Client, values: Mapping[str, Any], *, skip_empty: bool = False) -> Client:
        """Assign standard and ``custom.<key>`` values onto ``client``."""
        custom_updates: dict[str, Any] = {}
        for field_name, raw_value in values.items():
            if skip_empty and (raw_value is None or (isinstance(raw_value, str) and raw_value.strip() == "")):
                continue
            if field_name.startswith(CUSTOM_FIELD_PREFIX):
                custom_updates[field_name[len(CUSTOM_FIELD_PREFIX) :]] = raw_value
                continue
            setattr(client, field_name, coerce_field_value(field_name, raw_value))
        if custom_updates:
            merged = dict(client.custom_fields or {})
            merged.update(custom_updates)
            client.custom_fields = merged
        client.refresh_display_name()
        return client

    def create(self, values: Mapping[str, Any]) -> Client:
        client = Client(
            organization_id=self.organization_id,
            client_type=ClientType.COMPANY,
            status=ClientStatus.ACTIVE,
            country="PL",
        )
        if values.get("client_type") is None and not values.get("company_name"):
            if values.get("first_name") or values.get("last_name"):
                client.client_type = ClientType.INDIVIDUAL
        self.apply_values(client, values, skip_empty=True)
        self.session.add(client)
        self.session.flush()
        return client

    def update(self, client: Client, values: Mapping[str, Any]) -> Client:
        """Overwrite fields with the non-empty values provided."""
        self.apply_values(client, values, skip_empty=True)
        self.session.flush()
        return client

    def soft_delete(self, client: Client, *, deleted_at: datetime | None = None) -> Client:
        client.deleted_at = deleted_at or datetime.now(timezone.utc)
        self.session.flush()
        return client

    def hard_delete(self, client: Client) -> None:
        self.session.delete(client)
        self.session.flush()

    # Lookups used by bulk operations --------------------------------------

    def get_tags(self, tag_ids: Iterable[int]) -> dict[int, Tag]:
        ids = list(tag_ids)
        if not ids:
            return {}
        stmt = select(Tag).where(Tag.organization_id == self.organization_id, Tag.id.in_(ids))
        return {tag.id: tag for tag in self.session.execute(stmt).scalars()}

    def get_user(self, user_id: int) -> User | None:
        stmt = select(User).where(User.id == user_id, User.organization_id == self.organization_id)
        return self.session.execute(stmt).scalar_one_or_none()

    # Filtered reads -------------------------------------------------------

    def find_by_filter(
        self,
        *,
        statuses: Sequence[ClientStatus] = (),
        tag_ids: Sequence[int] = (),
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        search: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
        sort: str | None = None,
    ) -> Iterator[Client]:
        """
        Yield matching clients in a deterministic order.

        Custom-field predicates are matched in Python against the JSON column
        so the filter behaves the same on every database backend.
        """
        stmt = self._select()
        if statuses:
            stmt = stmt.where(Client.status.in_(tuple(statuses)))
        if tag_ids:
            stmt = stmt.where(Client.tags.any(Tag.id.in_(tuple(tag_ids))))
        if created_from is not None:
            stmt = stmt.where(Client.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Client.created_at <= created_to)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    Client.display_name.ilike(pattern),
                    Client.tax_id.ilike(pattern),
                    Client.email.ilike(pattern),
                    Client.city.ilike(pattern),
                )
            )
        stmt = stmt.order_by(*sort_clause(sort))

        predicates = {str(key): value for key, value in (custom_fields or {}).items()}
        for client in self.session.execute(stmt).scalars().all():
            if predicates and not _matches_custom_fields(client, predicates):
                continue
            yield client


def _matches_custom_fields(client: Client, predicates: Mapping[str, Any]) -> bool:
    stored = client.custom_fields or {}
    for key, expected in predicates.items():
        actual = stored.get(key)
        if actual is None:
            return False
        if str(actual).strip().lower() != str(expected).strip().lower():
            return False
    return True
