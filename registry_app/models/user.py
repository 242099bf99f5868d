# registry_app/models/user.py

from .base import BaseModel, db


class User(BaseModel):
    """Registry user; acts as job owner, mutation actor and account manager."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    organization = db.relationship("Organization", back_populates="users")

    def __repr__(self):
        return f"<User {self.username}>"

    @property
    def full_name(self):
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.username
