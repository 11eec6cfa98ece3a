"""
Transactional document store.

A thin key-value/document layer over the documents table:

    store.run_transaction(fn)   # fn(tx) -> T, all-or-nothing
    tx.get(ref) / tx.set(ref, fields) / tx.update(ref, fields)

Writes made through a transaction commit together or not at
all. If another writer changed a document after this
transaction read it, the commit fails and the whole
transaction is aborted with TransientConflict. Retrying is
the caller's decision.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from roommate_ledger.exceptions import InvalidRequest, NotFound, TransientConflict
from roommate_ledger.models.document import Document

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DocumentRef:
    """Slash-separated document path: collection/.../id."""

    path: str

    def __post_init__(self):
        parts = self.path.split("/")
        if len(parts) < 2 or len(parts) % 2 != 0 or not all(parts):
            raise ValueError(f"Invalid document path: {self.path!r}")

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0]

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[1]

    @classmethod
    def of(cls, collection: str, doc_id: str) -> "DocumentRef":
        return cls(f"{collection}/{doc_id}")

    def child(self, collection: str, doc_id: str) -> "DocumentRef":
        return DocumentRef(f"{self.path}/{collection}/{doc_id}")


@dataclass
class DocumentSnapshot:
    """A detached copy of a document as read by a transaction."""

    ref: DocumentRef
    data: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None

    @classmethod
    def from_row(cls, row: Document) -> "DocumentSnapshot":
        return cls(
            ref=DocumentRef(row.path),
            data=copy.deepcopy(row.data),
            version=row.version,
            create_time=row.created_at,
            update_time=row.updated_at,
        )


class Transaction:
    """
    Reads and writes inside one store transaction.

    A document's version is captured the first time the
    transaction reads it, and the row is pinned until commit.
    Every later write to that document is checked against the
    captured version. A document first read as absent stays
    absent for the transaction, so writing it is an INSERT that
    collides with any concurrent insert.
    """

    def __init__(self, session: Session):
        self._session = session
        self._read: dict[str, Document | None] = {}

    def _load(self, ref: DocumentRef) -> Document | None:
        if ref.path not in self._read:
            self._read[ref.path] = self._session.get(Document, ref.path)
        return self._read[ref.path]

    def get(self, ref: DocumentRef) -> DocumentSnapshot | None:
        row = self._load(ref)
        if row is None:
            return None
        return DocumentSnapshot.from_row(row)

    def create(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        """Insert a new document. Fails if it already exists."""
        if self._load(ref) is not None:
            raise InvalidRequest(f"Document {ref.path} already exists")
        self._insert(ref, fields)

    def set(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        """Create the document or replace all of its fields."""
        row = self._load(ref)
        if row is None:
            self._insert(ref, fields)
        else:
            row.data = copy.deepcopy(dict(fields))

    def update(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document."""
        row = self._load(ref)
        if row is None:
            raise NotFound(f"Document {ref.path} not found")
        merged = copy.deepcopy(row.data)
        merged.update(copy.deepcopy(dict(fields)))
        row.data = merged

    def _insert(self, ref: DocumentRef, fields: dict[str, Any]) -> None:
        row = Document(
            path=ref.path,
            collection=ref.collection,
            doc_id=ref.id,
            data=copy.deepcopy(dict(fields)),
        )
        self._session.add(row)
        self._read[ref.path] = row
        # Flush so a concurrent insert of the same path fails here
        self._session.flush()


class DocumentStore:
    """
    Document store backed by a SQLAlchemy session factory.

    Each run_transaction call gets its own session. Non-transactional
    reads (get, list_collection) also use a short-lived session.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """
        Run fn inside one atomic transaction.

        Commits if fn returns normally. Rolls back if fn raises,
        re-raising the original exception. Version conflicts and
        concurrent-insert collisions become TransientConflict.
        """
        session = self._session_factory()
        try:
            result = fn(Transaction(session))
            session.commit()
            return result
        except (StaleDataError, IntegrityError) as e:
            session.rollback()
            logger.warning("Transaction aborted by concurrent write: %s", e)
            raise TransientConflict(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, ref: DocumentRef) -> DocumentSnapshot | None:
        session = self._session_factory()
        try:
            row = session.get(Document, ref.path)
            return None if row is None else DocumentSnapshot.from_row(row)
        finally:
            session.close()

    def list_collection(self, collection: str) -> list[DocumentSnapshot]:
        """Return all documents directly inside a collection, oldest first."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.created_at, Document.path)
            ).scalars().all()
            return [DocumentSnapshot.from_row(row) for row in rows]
        finally:
            session.close()

    def ping(self) -> bool:
        session = self._session_factory()
        try:
            session.execute(text("SELECT 1"))
            return True
        finally:
            session.close()
