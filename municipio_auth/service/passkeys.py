from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from municipio_auth.logging import get_logger
from municipio_auth.service.errors import ConflictError, NotFoundError, ValidationError
from municipio_auth.storage.common import CredentialStore, generate_uuid
from municipio_auth.storage.errors import ConstraintViolation
from municipio_auth.storage.models import PasskeyCredential, utcnow

logger = get_logger(__name__)

CEREMONY_KINDS = ("register", "login")
DEFAULT_CEREMONY_TTL_SECONDS = 300


@dataclass
class CeremonyState:
    kind: str
    ceremony_id: str
    owner_id: str
    data: Dict[str, Any] = field(default_factory=dict)


def ceremony_key(kind: str, ceremony_id: str) -> str:
    return f"webauthn:{kind}:{ceremony_id}"


class PasskeyCredentialManager:
    """Stores passkey public material and tracks signature counters.

    Signature verification happens upstream; this class only decides whether
    a reported counter means the authenticator was cloned.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: Any,
        *,
        ceremony_ttl_seconds: int = DEFAULT_CEREMONY_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ceremony_ttl_seconds = ceremony_ttl_seconds

    async def register(
        self,
        owner_id: str,
        credential_id: bytes,
        public_key: bytes,
        initial_counter: int,
        transports: Sequence[str] = (),
        *,
        nickname: Optional[str] = None,
        aaguid: Optional[bytes] = None,
    ) -> PasskeyCredential:
        if not credential_id:
            raise ValidationError("credential id required")
        if not public_key:
            raise ValidationError("public key required")
        if initial_counter < 0:
            raise ValidationError("signature counter must be non-negative")
        now = utcnow()
        credential = PasskeyCredential(
            id=generate_uuid(),
            owner_id=owner_id,
            credential_id=bytes(credential_id),
            public_key=bytes(public_key),
            sign_count=initial_counter,
            transports=[t for t in transports if t],
            aaguid=aaguid,
            nickname=(nickname or "").strip() or None,
            cloned=False,
            created_at=now,
            updated_at=now,
        )
        try:
            stored = await asyncio.to_thread(self.store.insert_passkey, credential)
        except ConstraintViolation as exc:
            logger.warning("passkey_register_conflict", owner_id=owner_id, detail=exc.detail)
            raise ConflictError("credential already registered", detail=exc.detail) from exc
        logger.info("passkey_registered", owner_id=owner_id, passkey_id=stored.id)
        return stored

    async def find_by_credential_id(self, credential_id: bytes) -> PasskeyCredential:
        found = await asyncio.to_thread(
            self.store.get_passkey_by_credential_id, bytes(credential_id)
        )
        if found is None:
            raise NotFoundError("credential not found")
        return found

    async def update_counter(self, credential_id: bytes, new_counter: int) -> PasskeyCredential:
        """Record a reported signature counter.

        A counter that does not exceed the stored one leaves the stored value
        in place and sets ``cloned``, which never clears.
        """
        if new_counter < 0:
            raise ValidationError("signature counter must be non-negative")
        outcome = await asyncio.to_thread(
            self.store.advance_passkey_counter, bytes(credential_id), new_counter
        )
        if outcome is None:
            raise NotFoundError("credential not found")
        updated, advanced = outcome
        if not advanced:
            logger.warning(
                "passkey_counter_regression",
                passkey_id=updated.id,
                owner_id=updated.owner_id,
                stored_counter=updated.sign_count,
                reported_counter=new_counter,
            )
        return updated

    async def list_for_owner(self, owner_id: str) -> List[PasskeyCredential]:
        return await asyncio.to_thread(self.store.list_passkeys, owner_id)

    async def delete(self, owner_id: str, credential_pk: str) -> None:
        removed = await asyncio.to_thread(self.store.delete_passkey, credential_pk, owner_id)
        if not removed:
            raise NotFoundError("credential not found")
        logger.info("passkey_deleted", owner_id=owner_id, passkey_id=credential_pk)

    async def begin_ceremony(
        self, kind: str, owner_id: str, data: Optional[Dict[str, Any]] = None
    ) -> str:
        """Stash challenge state for a registration or login ceremony.

        Returns the ceremony id the client must echo back to finish.
        """
        if kind not in CEREMONY_KINDS:
            raise ValidationError("unknown ceremony kind", detail={"kind": kind})
        ceremony_id = secrets.token_urlsafe(24)
        payload = {"owner_id": owner_id, "data": data or {}}
        await self.cache.stash_ceremony(
            ceremony_key(kind, ceremony_id), payload, self.ceremony_ttl_seconds
        )
        return ceremony_id

    async def finish_ceremony(self, kind: str, ceremony_id: str) -> CeremonyState:
        if kind not in CEREMONY_KINDS:
            raise ValidationError("unknown ceremony kind", detail={"kind": kind})
        if not ceremony_id:
            raise ValidationError("ceremony id required")
        payload = await self.cache.pop_ceremony(ceremony_key(kind, ceremony_id))
        if not payload or not payload.get("owner_id"):
            raise ValidationError("ceremony expired or unknown")
        return CeremonyState(
            kind=kind,
            ceremony_id=ceremony_id,
            owner_id=str(payload["owner_id"]),
            data=dict(payload.get("data") or {}),
        )
