"""
Seed permissions, roles and the first admin account (idempotent).

Usage:
  python scripts/init_db.py

Reads DATABASE_URL, ADMIN_EMAIL and ADMIN_PASSWORD from the environment (.env honoured).
Does NOT overwrite an existing admin user's password.
"""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.campusvoice.constants import ROLE_ADMIN  # noqa: E402
from app.campusvoice.models import User  # noqa: E402
from app.campusvoice.seed import seed_rbac  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    load_dotenv()
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@campusvoice.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///campusvoice.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        roles = seed_rbac(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                name="Campus Administrator",
                is_active=True,
            )
            s.add(user)
        if roles[ROLE_ADMIN] not in user.roles:
            user.roles.append(roles[ROLE_ADMIN])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
