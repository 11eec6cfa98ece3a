"""
Pydantic schemas for debts and settlements.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, ValidationError

from roommate_ledger.exceptions import MalformedDocument
from roommate_ledger.models.enums import ActionType, DebtStatus
from roommate_ledger.models.store import DocumentSnapshot


class Debt(BaseModel):
    """
    An obligation from one roommate to another.

    Moves from OPEN to CLOSED exactly once. Amount and party
    checks are left to the settlement handler so that a bad
    stored debt surfaces as Malformed instead of a parse error.
    """
    id: str
    apartment_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    status: DebtStatus = DebtStatus.OPEN
    description: str | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    settlement_artifact_id: str | None = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "Debt":
        try:
            return cls.model_validate({**snapshot.data, "id": snapshot.ref.id})
        except ValidationError as e:
            raise MalformedDocument(snapshot.ref.path, str(e)) from e

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


class SettlementAuditRecord(BaseModel):
    """Append-only trace of a closed debt. Never updated or deleted."""
    id: str
    apartment_id: str
    type: ActionType = ActionType.DEBT_CLOSED
    debt_id: str
    settlement_artifact_id: str
    actor_id: str
    debtor_id: str
    creditor_id: str
    original_amount: Decimal
    settlement_amount: Decimal
    created_at: datetime

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "SettlementAuditRecord":
        try:
            return cls.model_validate({**snapshot.data, "id": snapshot.ref.id})
        except ValidationError as e:
            raise MalformedDocument(snapshot.ref.path, str(e)) from e

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


class SettlementResult(BaseModel):
    """
    Outcome of closing a debt.

    already_closed is True when the debt had been closed by an
    earlier call; the artifact id and timestamp are the originals.
    """
    debt_id: str
    settlement_artifact_id: str
    closed_at: datetime
    already_closed: bool = False


# --- Request Schemas ---

class DebtCreate(BaseModel):
    """Record that one roommate owes another."""
    from_user_id: str = Field(min_length=1, max_length=128)
    to_user_id: str = Field(min_length=1, max_length=128)
    amount: Decimal = Field(gt=0, decimal_places=2)
    actor_id: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=255)


class CloseDebtRequest(BaseModel):
    actor_id: str = Field(min_length=1, max_length=128)


class SettleRequest(BaseModel):
    """
    Settle up between two roommates in one step.

    Creates a debt for the amount and closes it immediately.
    The amount may be less than what is currently owed.
    """
    from_user_id: str = Field(min_length=1, max_length=128)
    to_user_id: str = Field(min_length=1, max_length=128)
    amount: Decimal = Field(gt=0, decimal_places=2)
    actor_id: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=255)
