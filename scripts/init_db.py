import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gradeai.models import Base, User
from scripts._db_utils import create_script_engine, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Create the demo parent account in an idempotent way.
    Skipped unless DEMO_EMAIL is set; never overwrites an existing password.
    """
    demo_email = (os.environ.get("DEMO_EMAIL") or "").strip().lower()
    if not demo_email:
        print("DEMO_EMAIL not set; skipping demo account seed.", flush=True)
        return
    demo_password = os.environ.get("DEMO_PASSWORD") or ""
    if len(demo_password) < 8:
        raise RuntimeError("DEMO_PASSWORD must be at least 8 characters when DEMO_EMAIL is set.")

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///gradeai.db").strip()

    # Direct engine/session so release can run without importing app.wsgi.
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == demo_email).one_or_none()
        if user:
            print(f"Demo account {demo_email} already exists.", flush=True)
            return
        s.add(
            User(
                name=(os.environ.get("DEMO_NAME") or "Demo Elternteil").strip(),
                email=demo_email,
                password_hash=generate_password_hash(demo_password),
                language="de",
                is_active=True,
            )
        )
        print(f"Created demo account {demo_email}.", flush=True)


def create_all_for_dev(database_url: str | None = None) -> None:
    """Local dev shortcut: create tables directly instead of running alembic."""
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///gradeai.db").strip()
    if not db_url.startswith("sqlite"):
        raise RuntimeError("create_all is only for local sqlite databases; use `alembic upgrade head`.")
    engine = create_script_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def main() -> None:
    create_all_for_dev()
    seed_only()


if __name__ == "__main__":
    main()
