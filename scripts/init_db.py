import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.etmf.constants import PERMISSION_FLAGS, TMF_REFERENCE_ZONES, empty_permissions, full_permissions  # noqa: E402
from app.etmf.models import Role, User  # noqa: E402
from app.etmf.modules.tmf_reference.models import Zone  # noqa: E402


def _read_only_permissions() -> dict[str, dict[str, bool]]:
    perms = empty_permissions()
    for resource, actions in PERMISSION_FLAGS.items():
        if "read" in actions:
            perms[resource]["read"] = True
    return perms


# (role_key, name, description, permissions factory)
SYSTEM_ROLES = (
    ("etmf_admin", "eTMF Administrator", "Full access to every eTMF resource.", full_permissions),
    ("auditor", "Auditor", "Read-only access for inspections and audits.", _read_only_permissions),
)


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed(s: Session, *, admin_email: str, admin_password: str) -> User:
    """
    Idempotent: system roles and zones are created when missing, never rewritten.
    An existing admin user's password is left alone.
    """
    now = datetime.utcnow()
    roles: dict[str, Role] = {}
    for role_key, name, description, perms in SYSTEM_ROLES:
        role = s.query(Role).filter(Role.role_key == role_key).one_or_none()
        if not role:
            role = Role(
                role_key=role_key,
                name=name,
                description=description,
                level="ENTERPRISE",
                permissions=perms(),
                is_system=True,
                status="ACTIVE",
                created_at=now,
                updated_at=now,
            )
            s.add(role)
        roles[role_key] = role

    for zone_number, zone_name in TMF_REFERENCE_ZONES:
        if not s.query(Zone.id).filter(Zone.zone_number == zone_number).first():
            s.add(Zone(zone_number=zone_number, zone_name=zone_name, is_active=True, created_at=now, updated_at=now))

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(
            email=admin_email,
            user_name="Administrator",
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(user)
    if roles["etmf_admin"] not in user.roles:
        user.roles.append(roles["etmf_admin"])
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@etmf.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///etmf.db").strip()

    # Direct engine/session so release can seed without importing app.wsgi.
    with _session_scope(db_url) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
