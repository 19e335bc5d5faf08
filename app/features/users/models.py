"""
User model with ULID primary keys.

Users are the principals checked by the access-control feature.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, Integer, CheckConstraint, DateTime
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return ulid.new().str


class User(Base, TimestampMixin):
    """
    User model representing marketplace accounts (staff, customers, suppliers).

    Users are never deleted, only deactivated.
    """
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("completion_percent >= 0 AND completion_percent <= 100", name="ck_users_completion_percent"),
    )

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Profile completeness (0-100), used by RESTRICTED feature visibility
    completion_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Track last request
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r})>"
