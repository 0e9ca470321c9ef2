from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from app.gradeai.db import create_db_engine


def create_script_engine(db_url: str):
    return create_db_engine(db_url)


@contextmanager
def script_session(db_url: str):
    """Standalone session for scripts that run without an app (release, seeding)."""
    engine = create_script_engine(db_url)
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
