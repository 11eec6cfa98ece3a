"""
Shared enumerations for stored documents.

Stored as their string values inside document fields.
"""

import enum


class DebtStatus(str, enum.Enum):
    """Lifecycle of a debt. CLOSED is terminal."""
    OPEN = "open"
    CLOSED = "closed"


class ActionType(str, enum.Enum):
    """Kinds of entries in an apartment's activity log."""
    DEBT_CLOSED = "debt_closed"
