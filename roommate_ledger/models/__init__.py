"""
Database models package.

All models must be imported here so that Base.metadata
knows every table when the schema is created.
"""

from roommate_ledger.models.base import Base
from roommate_ledger.models.enums import DebtStatus, ActionType
from roommate_ledger.models.document import Document
from roommate_ledger.models.store import (
    DocumentRef,
    DocumentSnapshot,
    DocumentStore,
    Transaction,
)

__all__ = [
    "Base",
    "DebtStatus",
    "ActionType",
    "Document",
    "DocumentRef",
    "DocumentSnapshot",
    "DocumentStore",
    "Transaction",
]
