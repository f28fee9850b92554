"""
Client Module

Borrower records as seen by the servicing engine. Clients are maintained
elsewhere; the engine only reads them to match payments and to find the
messaging channel identity for reminders.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
import uuid

from .storage import StorageInterface, StorageRecord


@dataclass
class Client(StorageRecord):
    """Borrower"""
    full_name: str
    phone: Optional[str] = None
    line_user_id: Optional[str] = None      # Messaging channel identity
    bank_account_number: Optional[str] = None


def normalize_account_number(value: Optional[str]) -> str:
    """Digits only, so "123-4-56789-0" and "1234567890" compare equal"""
    if not value:
        return ""
    return "".join(ch for ch in value if ch.isdigit())


class ChannelIdentityLookup(ABC):
    """Resolves the messaging channel identity of a client"""

    @abstractmethod
    def find_channel_identity(self, client_id: str) -> Optional[str]:
        pass


class ClientRepository(ChannelIdentityLookup):
    """
    Storage-backed client lookups
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.clients_table = "clients"

    def create_client(
        self,
        full_name: str,
        phone: Optional[str] = None,
        line_user_id: Optional[str] = None,
        bank_account_number: Optional[str] = None,
        client_id: Optional[str] = None
    ) -> Client:
        now = datetime.now(timezone.utc)
        client = Client(
            id=client_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name,
            phone=phone,
            line_user_id=line_user_id,
            bank_account_number=bank_account_number
        )
        self.storage.save(self.clients_table, client.id, client.to_dict())
        return client

    def get(self, client_id: str) -> Optional[Client]:
        data = self.storage.load(self.clients_table, client_id)
        if data:
            return Client.from_dict(data)
        return None

    def find_by_line_user_id(self, line_user_id: str) -> Optional[Client]:
        results = self.storage.find(self.clients_table, {'line_user_id': line_user_id})
        if results:
            return Client.from_dict(results[0])
        return None

    def find_by_bank_account(self, account_number: str) -> List[Client]:
        wanted = normalize_account_number(account_number)
        if not wanted:
            return []
        return [
            Client.from_dict(data) for data in self.storage.load_all(self.clients_table)
            if normalize_account_number(data.get('bank_account_number')) == wanted
        ]

    def find_channel_identity(self, client_id: str) -> Optional[str]:
        client = self.get(client_id)
        if client and client.line_user_id:
            return client.line_user_id
        return None
