"""
Apartment membership.

Answers the one authorization question the ledger asks:
is this user a member of this apartment?
"""

import logging

from roommate_ledger.exceptions import NotFound
from roommate_ledger.models.paths import apartment_ref
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.schemas.apartment import ApartmentCreate, ApartmentResponse

logger = logging.getLogger(__name__)


class ApartmentDirectory:

    def __init__(self, store: DocumentStore):
        self.store = store

    def register(self, request: ApartmentCreate) -> ApartmentResponse:
        """Create or replace an apartment and its member list."""
        members = list(dict.fromkeys(m for m in request.members if m))
        ref = apartment_ref(request.id)
        self.store.run_transaction(
            lambda tx: tx.set(ref, {"name": request.name, "members": members})
        )
        logger.info("Registered apartment %s with %d members", request.id, len(members))
        return ApartmentResponse(id=request.id, name=request.name, members=members)

    def get(self, apartment_id: str) -> ApartmentResponse:
        snapshot = self.store.get(apartment_ref(apartment_id))
        if snapshot is None:
            raise NotFound(f"Apartment {apartment_id} not found")
        members = snapshot.data.get("members")
        return ApartmentResponse(
            id=apartment_id,
            name=str(snapshot.data.get("name", "")),
            members=[m for m in members if isinstance(m, str)]
            if isinstance(members, list) else [],
        )

    def is_member(self, apartment_id: str, user_id: str) -> bool:
        if not apartment_id or not user_id:
            return False
        try:
            return user_id in self.get(apartment_id).members
        except NotFound:
            return False
