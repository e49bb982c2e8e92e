#!/usr/bin/env python
"""Idempotent demo seed: branches, staff for every role and a small catalog.

Usage:
    python backend/scripts/seed_demo.py             # seed normally
    python backend/scripts/seed_demo.py --dry-run   # run logic then rollback (no DB changes)
    python backend/scripts/seed_demo.py --show      # print users and catalog after seeding
"""
from __future__ import annotations
import os, sys, argparse, textwrap
from sqlalchemy import select

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from orderflow import create_app, get_db  # type: ignore
from orderflow.models.authz import (
    Base, Branch, User, ManagerBranch,
    ROLE_ADMIN, ROLE_MANAGER, ROLE_BRANCH_USER, ROLE_PACKAGER, ROLE_DISPATCHER,
)
from orderflow.models.catalog_item import CatalogItem

BRANCHES = ['Central', 'North']

# (email, name, role, home branch name or None)
STAFF = [
    ('admin@example.com', 'Admin', ROLE_ADMIN, None),
    ('manager@example.com', 'Branch Manager', ROLE_MANAGER, 'Central'),
    ('central.user@example.com', 'Central Clerk', ROLE_BRANCH_USER, 'Central'),
    ('north.user@example.com', 'North Clerk', ROLE_BRANCH_USER, 'North'),
    ('packer@example.com', 'Packer', ROLE_PACKAGER, None),
    ('dispatch@example.com', 'Dispatcher', ROLE_DISPATCHER, None),
]

# (sku, name, category, unit, price_cents, stock)
CATALOG = [
    ('PAP-A4', 'A4 Paper Ream', 'Stationery', 'ream', 450, 300),
    ('PEN-BLU', 'Blue Pen (box of 50)', 'Stationery', 'box', 1200, 40),
    ('TON-HP26', 'HP 26A Toner', 'Printing', 'piece', 8900, 6),
    ('CLN-SPR', 'Surface Cleaner Spray', 'Cleaning', 'bottle', 350, 0),
]


def ensure_branches(session):
    existing = {b.name: b for b in session.execute(select(Branch)).scalars()}
    created = 0
    for name in BRANCHES:
        if name not in existing:
            existing[name] = Branch(name=name, is_active=True)
            session.add(existing[name])
            created += 1
    session.flush()
    return existing, created


def ensure_staff(session, branches):
    created = 0
    for email, name, role, branch_name in STAFF:
        user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            branch = branches.get(branch_name) if branch_name else None
            user = User(name=name, email=email, role=role, branch_id=branch.id if branch else None, is_active=True)
            session.add(user)
            session.flush()
            created += 1
        if role == ROLE_MANAGER and branch_name:
            branch = branches[branch_name]
            link = session.execute(select(ManagerBranch).where(
                ManagerBranch.manager_id == user.id, ManagerBranch.branch_id == branch.id)).scalar_one_or_none()
            if link is None:
                session.add(ManagerBranch(manager_id=user.id, branch_id=branch.id, is_active=True))
    return created


def ensure_catalog(session):
    existing = {c.sku for c in session.execute(select(CatalogItem)).scalars()}
    created = 0
    for sku, name, category, unit, price, stock in CATALOG:
        if sku not in existing:
            session.add(CatalogItem(sku=sku, name=name, category=category, unit=unit,
                                    price_cents=price, current_stock=stock, is_active=True))
            created += 1
    return created


def print_summary(session):
    print('Users:')
    for u in session.execute(select(User).order_by(User.id)).scalars():
        print(f"  {u.id:>3} {u.role.ljust(12)} {u.email} branch={u.branch_id}")
    print('Catalog:')
    for c in session.execute(select(CatalogItem).order_by(CatalogItem.sku)).scalars():
        print(f"  {c.sku.ljust(10)} stock={c.current_stock:<5} price_cents={c.price_cents}")


def parse_args():
    p = argparse.ArgumentParser(
        description="Seed demo branches, staff and catalog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_demo.py\n  dry run: seed_demo.py --dry-run\n  show data: seed_demo.py --show\n""")
    )
    p.add_argument('--show', action='store_true', help='Print users and catalog after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    return p.parse_args()


def main():
    args = parse_args()
    app = create_app()
    with app.app_context():
        session = get_db()
        engine = session.get_bind()
        # Bootstrap schema when migrations have not been run; prefer `alembic upgrade head`
        import orderflow.models.order  # noqa: F401
        import orderflow.models.notification  # noqa: F401
        import orderflow.models.audit  # noqa: F401
        Base.metadata.create_all(engine)

        branches, created_b = ensure_branches(session)
        created_u = ensure_staff(session, branches)
        created_c = ensure_catalog(session)
        if args.show:
            print_summary(session)
        if args.dry_run:
            session.rollback()
            print(f"[DRY-RUN] (rolled back) Branches: {created_b}, Users: {created_u}, Catalog items: {created_c}")
        else:
            session.commit()
            print(f"[DONE] Branches created: {created_b}, Users created: {created_u}, Catalog items created: {created_c}")


if __name__ == '__main__':
    main()
