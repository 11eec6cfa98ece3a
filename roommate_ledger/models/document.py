"""
Document model.

Every stored record (apartments, expenses, debts, actions,
balance projections) is a row in one table, addressed by its
slash-separated path. The payload is an arbitrary JSON object.

The version column is SQLAlchemy's optimistic concurrency
counter: an UPDATE only matches the row if the version read
earlier in the same session is still current.
"""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from roommate_ledger.models.base import Base


class Document(Base):
    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    collection: Mapped[str] = mapped_column(
        String(400), nullable=False, index=True
    )
    doc_id: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Document {self.path} v{self.version}>"
