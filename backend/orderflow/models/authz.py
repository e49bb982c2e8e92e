from __future__ import annotations
from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, UniqueConstraint, DateTime, text
from typing import Optional

Base = declarative_base()

# --- Roles ---
ROLE_ADMIN = 'ADMIN'
ROLE_MANAGER = 'MANAGER'
ROLE_BRANCH_USER = 'BRANCH_USER'
ROLE_PACKAGER = 'PACKAGER'
ROLE_DISPATCHER = 'DISPATCHER'
# Pseudo-role used by background jobs (never stored on a user)
ROLE_SYSTEM = 'SYSTEM'
ALL_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_BRANCH_USER, ROLE_PACKAGER, ROLE_DISPATCHER)


# --- Core Models ---
class Branch(Base):
    __tablename__ = 'branches'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    users = relationship('User', back_populates='branch')
    manager_links = relationship('ManagerBranch', back_populates='branch', cascade='all, delete-orphan')
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))


class User(Base):
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=ROLE_BRANCH_USER, index=True)
    branch_id: Mapped[Optional[int]] = mapped_column(ForeignKey('branches.id'), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    branch = relationship('Branch', back_populates='users')
    managed_branches = relationship('ManagerBranch', back_populates='manager', cascade='all, delete-orphan')
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))


class ManagerBranch(Base):
    """Assignment of a manager to a branch they approve orders for."""
    __tablename__ = 'manager_branches'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    manager_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    __table_args__ = (UniqueConstraint('manager_id', 'branch_id', name='uq_manager_branch'),)
    manager = relationship('User', back_populates='managed_branches')
    branch = relationship('Branch', back_populates='manager_links')
