from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.gradeai.models import Base

# pending -> (queued) -> processing -> completed | failed
ANALYSIS_STATUSES = ("pending", "queued", "processing", "completed", "failed")


class Upload(Base):
    """One uploaded test. Multi-page tests share a single row with several UploadPage rows."""

    __tablename__ = "uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    child_id: Mapped[int] = mapped_column(ForeignKey("children.id", ondelete="CASCADE"), nullable=False, index=True)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)

    analysis_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    grade: Mapped[float | None] = mapped_column(Float, nullable=True)
    grade_label: Mapped[str | None] = mapped_column(String(16), nullable=True)  # as written, e.g. "2-"
    subject: Mapped[str | None] = mapped_column(String(128), nullable=True)
    teacher_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    child = relationship("Child", back_populates="uploads")
    pages: Mapped[list["UploadPage"]] = relationship(
        "UploadPage",
        back_populates="upload",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="UploadPage.page_number",
    )


class UploadPage(Base):
    __tablename__ = "upload_pages"
    __table_args__ = (UniqueConstraint("upload_id", "page_number", name="uq_upload_pages_upload_page"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    upload_id: Mapped[int] = mapped_column(ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    upload = relationship("Upload", back_populates="pages")
