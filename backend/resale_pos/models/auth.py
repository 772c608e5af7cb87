from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import UserRole, enum_column


class User(db.Model):
    """
    Staff member known to the engine.

    Authentication happens upstream; this row only backs the actor id that the
    gateway forwards, seller references on sales, and audit attribution.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)
    role = db.Column(enum_column(UserRole, "ck_users_role"), nullable=False, default=UserRole.SELLER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role.value if self.role else None}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
