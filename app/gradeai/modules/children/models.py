from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.gradeai.models import Base


class Child(Base):
    __tablename__ = "children"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    grade: Mapped[str] = mapped_column(String(32), nullable=False)  # school year, e.g. "7"
    school_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "Gymnasium"

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    user = relationship("User", back_populates="children")
    uploads: Mapped[list["Upload"]] = relationship(  # noqa: F821
        "Upload",
        back_populates="child",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="Upload.uploaded_at.desc()",
    )
