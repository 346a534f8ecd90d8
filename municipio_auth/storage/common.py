"""Common storage contract and helpers shared by the memory and postgres stores."""

from __future__ import annotations

import uuid
from typing import Any, List, Optional, Protocol, Tuple, Union

from municipio_auth.storage.models import (
    Audience,
    Citizen,
    PasskeyCredential,
    RefreshTokenRecord,
    RoleGrant,
    StaffUser,
)


class CredentialStore(Protocol):
    """Capabilities the session core needs from durable storage.

    Implementations are synchronous and thread-safe; the async service layer
    calls them through ``asyncio.to_thread``.
    """

    def get_staff_by_email(self, email: str) -> Optional[StaffUser]: ...

    def get_staff_by_id(self, user_id: str) -> Optional[StaffUser]: ...

    def get_citizen_by_email(self, email: str) -> Optional[Citizen]: ...

    def get_citizen_by_id(self, user_id: str) -> Optional[Citizen]: ...

    def list_role_grants(self, user_id: str) -> List[RoleGrant]: ...

    def has_teaching_assignment(self, user_id: str) -> bool: ...

    def insert_refresh_token(
        self, record: RefreshTokenRecord, *, invalidate_others: bool = True
    ) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def invalidate_other_refresh_tokens(
        self, subject: str, audience: Audience, except_hash: str
    ) -> int: ...

    def update_profile(
        self, audience: Audience, user_id: str, name: str, email: Optional[str]
    ) -> Optional[Union[StaffUser, Citizen]]: ...

    def insert_passkey(self, credential: PasskeyCredential) -> PasskeyCredential: ...

    def get_passkey_by_credential_id(
        self, credential_id: bytes
    ) -> Optional[PasskeyCredential]: ...

    def list_passkeys(self, owner_id: str) -> List[PasskeyCredential]: ...

    def advance_passkey_counter(
        self, credential_id: bytes, new_counter: int
    ) -> Optional[Tuple[PasskeyCredential, bool]]:
        """Store ``new_counter`` only if it exceeds the stored one, else flag ``cloned``.

        The compare and the write are one atomic step. Returns the updated
        credential and whether the counter advanced, or ``None`` when the
        credential id is unknown.
        """
        ...

    def delete_passkey(self, passkey_id: str, owner_id: str) -> bool: ...


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and trim an email; blank becomes ``None``."""
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def generate_uuid() -> str:
    return str(uuid.uuid4())
