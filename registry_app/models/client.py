# registry_app/models/client.py
"""
Client registry records and tenant tags.
"""

from enum import Enum as PyEnum

from sqlalchemy import Enum, Index, UniqueConstraint

from .base import BaseModel, db


class ClientType(PyEnum):
    """Legal form of a client"""

    COMPANY = "company"
    INDIVIDUAL = "individual"


class ClientStatus(PyEnum):
    """Client lifecycle status"""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


client_tags = db.Table(
    "client_tags",
    db.Column("client_id", db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), primary_key=True),
    db.Column("tag_id", db.Integer, db.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Tag(BaseModel):
    """Tenant-scoped label attached to clients."""

    __tablename__ = "tags"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    color = db.Column(db.String(20), nullable=True)

    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_tags_org_name"),)

    def __repr__(self):
        return f"<Tag {self.name}>"


class Client(BaseModel):
    """
    A single client of a tenant (company or individual).

    ``version`` drives optimistic concurrency: a flush against a row whose
    version changed underneath raises ``StaleDataError``.
    """

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    client_type = db.Column(
        Enum(ClientType, name="client_type_enum"),
        nullable=False,
        default=ClientType.COMPANY,
    )

    # Identity
    company_name = db.Column(db.String(255), nullable=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    display_name = db.Column(db.String(255), nullable=False, index=True)
    tax_id = db.Column(db.String(20), nullable=True, index=True)  # NIP
    regon = db.Column(db.String(20), nullable=True, index=True)

    # Contact details
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(50), nullable=True)
    street = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(10), nullable=True)
    country = db.Column(db.String(2), nullable=False, default="PL")
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(
        Enum(ClientStatus, name="client_status_enum"),
        nullable=False,
        default=ClientStatus.ACTIVE,
        index=True,
    )
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    custom_fields = db.Column(db.JSON, nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    version = db.Column(db.Integer, nullable=False)

    manager = db.relationship("User", foreign_keys=[manager_id])
    tags = db.relationship("Tag", secondary=client_tags, lazy="selectin", order_by="Tag.name")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("idx_clients_org_tax_id", "organization_id", "tax_id"),
        Index("idx_clients_org_display_name", "organization_id", "display_name"),
    )

    def __repr__(self):
        return f"<Client {self.display_name}>"

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def refresh_display_name(self):
        """Derive ``display_name`` from the company or personal name."""
        if self.client_type == ClientType.INDIVIDUAL:
            parts = [part for part in (self.first_name, self.last_name) if part]
            name = " ".join(parts)
        else:
            name = self.company_name or ""
        if not name:
            name = self.company_name or " ".join(p for p in (self.first_name, self.last_name) if p)
        self.display_name = name or self.tax_id or self.email or "Unnamed client"
        return self.display_name
