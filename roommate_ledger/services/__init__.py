"""Business logic services."""

from roommate_ledger.services.apartment_directory import ApartmentDirectory
from roommate_ledger.services.ledger_service import LedgerService
from roommate_ledger.services.settlement_service import SettlementService

__all__ = ["ApartmentDirectory", "LedgerService", "SettlementService"]
