"""
Tenant target-database credentials.
"""

from typing import Optional

from sqlalchemy import String, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class DBCredential(BaseModel, TimestampMixin):
    """Connection details for a tenant's PostgreSQL database."""

    __tablename__ = "db_credentials"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id
    )

    user_id: Mapped[str] = mapped_column(String(64))

    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    db_host: Mapped[str] = mapped_column(String(255))
    db_port: Mapped[int] = mapped_column(Integer, default=5432)
    db_name: Mapped[str] = mapped_column(String(100))
    db_user: Mapped[str] = mapped_column(String(100))
    db_password: Mapped[str] = mapped_column(String(255))
    db_ssl_mode: Mapped[str] = mapped_column(String(20), default="disable")

    __table_args__ = (
        Index("idx_db_credentials_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<DBCredential(id={self.id}, host={self.db_host}, db={self.db_name}, user={self.db_user})>"

    @property
    def identity(self) -> tuple:
        """Key under which a connection pool is cached."""
        return (self.id, self.db_host, self.db_port, self.db_name, self.db_user, self.db_ssl_mode)
