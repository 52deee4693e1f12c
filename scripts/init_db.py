import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.review.models import Permission, Role, User

PERMISSIONS = (
    ("admin.all", "Admin: all permissions"),
    ("changes.view", "Changes: view"),
    ("changes.abandon", "Changes: abandon"),
)

ROLE_PERMISSIONS = {
    "admin": ("admin.all",),
    "reviewer": ("changes.view",),
    "maintainer": ("changes.view", "changes.abandon"),
}

ROLE_NAMES = {
    "admin": "Administrator",
    "reviewer": "Reviewer",
    "maintainer": "Maintainer",
}


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


def seed_roles(s: Session) -> dict[str, Role]:
    """Create permissions and roles if missing; returns roles by key."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for role_key, perm_keys in ROLE_PERMISSIONS.items():
        r = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not r:
            r = Role(key=role_key, name=ROLE_NAMES[role_key])
            s.add(r)
        for pk in perm_keys:
            if perms[pk] not in r.permissions:
                r.permissions.append(perms[pk])
        roles[role_key] = r
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@review.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///review.db").strip()

    with _session_scope(db_url) as s:
        roles = seed_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
