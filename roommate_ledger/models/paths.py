"""
Document locations.

    apartments/{apartment_id}
    apartments/{apartment_id}/expenses/{expense_id}
    debts/{debt_id}
    actions/{action_id}
    balances/{apartment_id}/users/{user_id}
"""

from roommate_ledger.models.store import DocumentRef

APARTMENTS = "apartments"
DEBTS = "debts"
ACTIONS = "actions"
BALANCES = "balances"


def apartment_ref(apartment_id: str) -> DocumentRef:
    return DocumentRef.of(APARTMENTS, apartment_id)


def expenses_collection(apartment_id: str) -> str:
    return f"{APARTMENTS}/{apartment_id}/expenses"


def expense_ref(apartment_id: str, expense_id: str) -> DocumentRef:
    return apartment_ref(apartment_id).child("expenses", expense_id)


def debt_ref(debt_id: str) -> DocumentRef:
    return DocumentRef.of(DEBTS, debt_id)


def action_ref(action_id: str) -> DocumentRef:
    return DocumentRef.of(ACTIONS, action_id)


def balances_collection(apartment_id: str) -> str:
    return f"{BALANCES}/{apartment_id}/users"


def balance_ref(apartment_id: str, user_id: str) -> DocumentRef:
    return DocumentRef.of(BALANCES, apartment_id).child("users", user_id)
