from __future__ import annotations
from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, UniqueConstraint, DateTime, JSON, text
from typing import List, Optional

Base = declarative_base()


class User(Base):
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False, default='staff', index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    crud_overrides = relationship('CrudPermission', back_populates='user', cascade='all, delete-orphan')
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    def set_password(self, raw: str):
        from werkzeug.security import generate_password_hash
        self.password_hash = generate_password_hash(raw)

    def verify_password(self, raw: str) -> bool:
        from werkzeug.security import check_password_hash
        return check_password_hash(self.password_hash, raw)


class CrudPermission(Base):
    """One create/edit/delete triple for a role on a page.

    Rows with user_id set are user overrides; they still count as role rows for
    the role they carry.
    """
    __tablename__ = 'crud_permissions'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    page: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    can_create: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    user = relationship('User', back_populates='crud_overrides')

    __table_args__ = (UniqueConstraint('role', 'page', 'user_id', name='uq_crud_permission'),)


class UserPermission(Base):
    """Page access for a role and the columns it may see there (``*`` = all)."""
    __tablename__ = 'user_permissions'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    page: Mapped[str] = mapped_column(String(64), nullable=False)
    columns: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    can_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    __table_args__ = (UniqueConstraint('role', 'page', name='uq_user_permission'),)
