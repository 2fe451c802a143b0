"""
Party & Branch Directory Module

Resolves clients, staff, admins and branches for the ledger engine. The
directory owns these records; the engine only reads them and applies balance
changes to staff parties through ``save_balance``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .errors import InvalidPartyError
from .money import Amount, to_decimal, quantize
from .storage import StorageInterface, StorageRecord


class PartyRole(Enum):
    """Fixed set of roles; a party's role never changes"""
    CLIENT = "client"
    STAFF = "staff"    # The only balance-bearing role
    ADMIN = "admin"


@dataclass
class Party(StorageRecord):
    """Client, staff member or admin"""
    name: str
    role: PartyRole
    balance: Decimal = Decimal('0.00')
    is_active: bool = True
    branch_ids: List[str] = field(default_factory=list)  # Staff only: authorized branches

    def can_access_branch(self, branch_id: str) -> bool:
        return branch_id in self.branch_ids

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Party':
        data = dict(data)
        data['role'] = PartyRole(data['role'])
        data['balance'] = Decimal(data.get('balance', '0'))
        return super().from_dict(data)


@dataclass
class Branch(StorageRecord):
    """Branch owned by a client and served by authorized staff"""
    code: str
    name: str
    client_id: str
    is_active: bool = True
    staff_ids: List[str] = field(default_factory=list)


class PartyDirectory:
    """Reads parties and writes staff balances"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "parties"

    def register_party(
        self,
        name: str,
        role: PartyRole,
        balance: Amount = Decimal('0'),
        branch_ids: Optional[List[str]] = None,
        is_active: bool = True,
        party_id: Optional[str] = None
    ) -> Party:
        """Create a party record (seeding and tests; user admin lives elsewhere)"""
        now = datetime.now(timezone.utc)
        party = Party(
            id=party_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            role=PartyRole(role),
            balance=quantize(to_decimal(balance)),
            is_active=is_active,
            branch_ids=list(branch_ids or [])
        )
        self.storage.insert(self.table_name, party.id, party.to_dict())
        return party

    def find_party(self, party_id: str) -> Optional[Party]:
        """Get a party by ID, or None"""
        data = self.storage.load(self.table_name, party_id)
        if data:
            return Party.from_dict(data)
        return None

    def save_balance(self, party_id: str, new_balance: Decimal) -> Party:
        """
        Persist a new balance for a party

        Raises:
            InvalidPartyError: If the party does not exist
        """
        party = self.find_party(party_id)
        if not party:
            raise InvalidPartyError(f"Party {party_id} not found")

        party.balance = quantize(new_balance)
        party.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, party.id, party.to_dict())
        return party


class BranchDirectory:
    """Reads branches for authorization checks"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "branches"
        self.storage.create_unique_index(self.table_name, "code")

    def register_branch(
        self,
        code: str,
        name: str,
        client_id: str,
        staff_ids: Optional[List[str]] = None,
        is_active: bool = True,
        branch_id: Optional[str] = None
    ) -> Branch:
        """Create a branch record (seeding and tests)"""
        now = datetime.now(timezone.utc)
        branch = Branch(
            id=branch_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            client_id=client_id,
            is_active=is_active,
            staff_ids=list(staff_ids or [])
        )
        self.storage.insert(self.table_name, branch.id, branch.to_dict())
        return branch

    def find_branch(self, branch_id: str) -> Optional[Branch]:
        """Get a branch by ID, or None"""
        data = self.storage.load(self.table_name, branch_id)
        if data:
            return Branch.from_dict(data)
        return None
