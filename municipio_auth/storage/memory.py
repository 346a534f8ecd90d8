from __future__ import annotations

import base64
import json
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from municipio_auth.logging import get_logger
from municipio_auth.storage.common import generate_uuid, normalize_email
from municipio_auth.storage.errors import ConstraintViolation
from municipio_auth.storage.models import (
    Audience,
    Citizen,
    GrantRole,
    PasskeyCredential,
    RefreshTokenRecord,
    RoleGrant,
    StaffUser,
    utcnow,
)
from municipio_auth.storage.redis_cache import REFRESH_ACTIVE, RedisCache, refresh_key


class MemoryStore:
    """In-memory credential store for tests and local development.

    When ``fs_root`` is given the state is written to
    ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.staff: Dict[str, StaffUser] = {}
        self.citizens: Dict[str, Citizen] = {}
        self.role_grants: Dict[str, List[RoleGrant]] = {}
        self.teaching: Set[str] = set()
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        # RLock so seeding helpers can call lookups while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- identities -------------------------------------------------------

    def create_staff_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> StaffUser:
        normalized = normalize_email(email)
        if not normalized:
            raise ConstraintViolation("email required", {"field": "email"})
        with self._data_lock:
            if any(u.email == normalized for u in self.staff.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = StaffUser(
                id=user_id or generate_uuid(),
                name=name,
                email=normalized,
                password_hash=password_hash,
                is_active=is_active,
            )
            self.staff[user.id] = user
            self._persist_state()
            return user

    def create_citizen(
        self,
        name: str,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        *,
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> Citizen:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized and any(c.email == normalized for c in self.citizens.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            citizen = Citizen(
                id=user_id or generate_uuid(),
                name=name,
                email=normalized,
                password_hash=password_hash,
                is_active=is_active,
            )
            self.citizens[citizen.id] = citizen
            self._persist_state()
            return citizen

    def get_staff_by_email(self, email: str) -> Optional[StaffUser]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            for user in self.staff.values():
                if user.email == normalized:
                    return user
        return None

    def get_staff_by_id(self, user_id: str) -> Optional[StaffUser]:
        with self._data_lock:
            return self.staff.get(user_id)

    def get_citizen_by_email(self, email: str) -> Optional[Citizen]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            for citizen in self.citizens.values():
                if citizen.email == normalized:
                    return citizen
        return None

    def get_citizen_by_id(self, user_id: str) -> Optional[Citizen]:
        with self._data_lock:
            return self.citizens.get(user_id)

    def update_profile(
        self, audience: Audience, user_id: str, name: str, email: Optional[str]
    ) -> Optional[Union[StaffUser, Citizen]]:
        normalized = normalize_email(email)
        with self._data_lock:
            table: Dict[str, Any] = (
                self.staff if audience == Audience.BACKOFFICE else self.citizens
            )
            current = table.get(user_id)
            if current is None:
                return None
            if audience == Audience.BACKOFFICE and not normalized:
                raise ConstraintViolation("email required", {"field": "email"})
            if normalized and any(
                other.email == normalized and other.id != user_id
                for other in table.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(current, name=name, email=normalized)
            table[user_id] = updated
            self._persist_state()
            return updated

    # -- roles ------------------------------------------------------------

    def add_role_grant(
        self,
        user_id: str,
        role: Union[GrantRole, str],
        *,
        secretaria_id: Optional[str] = None,
        secretaria_name: str = "",
        secretaria_slug: str = "",
    ) -> RoleGrant:
        label = role.value if isinstance(role, GrantRole) else str(role)
        with self._data_lock:
            if user_id not in self.staff:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            grant = RoleGrant(
                user_id=user_id,
                secretaria_id=secretaria_id or generate_uuid(),
                secretaria_name=secretaria_name,
                secretaria_slug=secretaria_slug,
                role=label,
            )
            self.role_grants.setdefault(user_id, []).append(grant)
            self._persist_state()
            return grant

    def add_teaching_assignment(self, user_id: str) -> None:
        with self._data_lock:
            if user_id not in self.staff:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.teaching.add(user_id)
            self._persist_state()

    def list_role_grants(self, user_id: str) -> List[RoleGrant]:
        with self._data_lock:
            grants = list(self.role_grants.get(user_id, []))
        return sorted(grants, key=lambda g: (g.secretaria_name, g.role))

    def has_teaching_assignment(self, user_id: str) -> bool:
        with self._data_lock:
            return user_id in self.teaching

    # -- refresh tokens ---------------------------------------------------

    def insert_refresh_token(
        self, record: RefreshTokenRecord, *, invalidate_others: bool = True
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            self.refresh_tokens[record.token_hash] = record
            if invalidate_others:
                self._invalidate_others(record.subject, record.audience, record.token_hash)
            self._persist_state()
            return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_hash)

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def invalidate_other_refresh_tokens(
        self, subject: str, audience: Audience, except_hash: str
    ) -> int:
        with self._data_lock:
            count = self._invalidate_others(subject, audience, except_hash)
            if count:
                self._persist_state()
            return count

    def _invalidate_others(self, subject: str, audience: Audience, except_hash: str) -> int:
        count = 0
        for record in self.refresh_tokens.values():
            if (
                record.subject == subject
                and record.audience == audience
                and record.token_hash != except_hash
                and not record.revoked
            ):
                record.revoked = True
                count += 1
        return count

    # -- passkeys ---------------------------------------------------------

    def insert_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        with self._data_lock:
            if any(
                p.credential_id == credential.credential_id for p in self.passkeys.values()
            ):
                raise ConstraintViolation(
                    "credential id already registered", {"field": "credential_id"}
                )
            self.passkeys[credential.id] = credential
            self._persist_state()
            return credential

    def get_passkey_by_credential_id(
        self, credential_id: bytes
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            for passkey in self.passkeys.values():
                if passkey.credential_id == credential_id:
                    return passkey
        return None

    def list_passkeys(self, owner_id: str) -> List[PasskeyCredential]:
        with self._data_lock:
            owned = [p for p in self.passkeys.values() if p.owner_id == owner_id]
        return sorted(owned, key=lambda p: p.created_at)

    def advance_passkey_counter(
        self, credential_id: bytes, new_counter: int
    ) -> Optional[Tuple[PasskeyCredential, bool]]:
        with self._data_lock:
            passkey = next(
                (p for p in self.passkeys.values() if p.credential_id == credential_id),
                None,
            )
            if passkey is None:
                return None
            advanced = new_counter > passkey.sign_count
            if advanced:
                passkey.sign_count = new_counter
            else:
                passkey.cloned = True
            passkey.updated_at = utcnow()
            self._persist_state()
            return replace(passkey), advanced

    def delete_passkey(self, passkey_id: str, owner_id: str) -> bool:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if passkey is None or passkey.owner_id != owner_id:
                return False
            del self.passkeys[passkey_id]
            self._persist_state()
            return True

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _b64(raw: Optional[bytes]) -> Optional[str]:
        return base64.b64encode(raw).decode("ascii") if raw is not None else None

    @staticmethod
    def _unb64(raw: Optional[str]) -> Optional[bytes]:
        return base64.b64decode(raw) if raw is not None else None

    @staticmethod
    def _serialize_identity(identity: Union[StaffUser, Citizen]) -> Dict[str, Any]:
        return {
            "id": identity.id,
            "name": identity.name,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "is_active": identity.is_active,
            "created_at": identity.created_at.isoformat(),
        }

    def _serialize_passkey(self, passkey: PasskeyCredential) -> Dict[str, Any]:
        return {
            "id": passkey.id,
            "owner_id": passkey.owner_id,
            "credential_id": self._b64(passkey.credential_id),
            "public_key": self._b64(passkey.public_key),
            "sign_count": passkey.sign_count,
            "transports": list(passkey.transports),
            "aaguid": self._b64(passkey.aaguid),
            "nickname": passkey.nickname,
            "cloned": passkey.cloned,
            "created_at": passkey.created_at.isoformat(),
            "updated_at": passkey.updated_at.isoformat(),
        }

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "staff": [self._serialize_identity(u) for u in self.staff.values()],
            "citizens": [self._serialize_identity(c) for c in self.citizens.values()],
            "role_grants": [
                {
                    "user_id": g.user_id,
                    "secretaria_id": g.secretaria_id,
                    "secretaria_name": g.secretaria_name,
                    "secretaria_slug": g.secretaria_slug,
                    "role": g.role,
                }
                for grants in self.role_grants.values()
                for g in grants
            ],
            "teaching": sorted(self.teaching),
            "refresh_tokens": [
                {
                    "id": r.id,
                    "subject": r.subject,
                    "audience": r.audience.value,
                    "token_hash": r.token_hash,
                    "expires_at": r.expires_at.isoformat(),
                    "created_at": r.created_at.isoformat(),
                    "revoked": r.revoked,
                }
                for r in self.refresh_tokens.values()
            ],
            "passkeys": [self._serialize_passkey(p) for p in self.passkeys.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.staff = {
            u["id"]: StaffUser(
                id=u["id"],
                name=u["name"],
                email=u["email"],
                password_hash=u.get("password_hash"),
                is_active=u.get("is_active", True),
                created_at=datetime.fromisoformat(u["created_at"]),
            )
            for u in data.get("staff", [])
        }
        self.citizens = {
            c["id"]: Citizen(
                id=c["id"],
                name=c["name"],
                email=c.get("email"),
                password_hash=c.get("password_hash"),
                is_active=c.get("is_active", True),
                created_at=datetime.fromisoformat(c["created_at"]),
            )
            for c in data.get("citizens", [])
        }
        self.role_grants = {}
        for g in data.get("role_grants", []):
            self.role_grants.setdefault(g["user_id"], []).append(RoleGrant(**g))
        self.teaching = set(data.get("teaching", []))
        self.refresh_tokens = {
            r["token_hash"]: RefreshTokenRecord(
                id=r["id"],
                subject=r["subject"],
                audience=Audience(r["audience"]),
                token_hash=r["token_hash"],
                expires_at=datetime.fromisoformat(r["expires_at"]),
                created_at=datetime.fromisoformat(r["created_at"]),
                revoked=r.get("revoked", False),
            )
            for r in data.get("refresh_tokens", [])
        }
        self.passkeys = {
            p["id"]: PasskeyCredential(
                id=p["id"],
                owner_id=p["owner_id"],
                credential_id=self._unb64(p["credential_id"]),
                public_key=self._unb64(p["public_key"]),
                sign_count=p.get("sign_count", 0),
                transports=list(p.get("transports") or []),
                aaguid=self._unb64(p.get("aaguid")),
                nickname=p.get("nickname"),
                cloned=p.get("cloned", False),
                created_at=datetime.fromisoformat(p["created_at"]),
                updated_at=datetime.fromisoformat(p["updated_at"]),
            )
            for p in data.get("passkeys", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            staff=len(self.staff),
            citizens=len(self.citizens),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True


class MemoryCache:
    """Process-local stand-in for the Redis cache.

    Only suitable for a single process: revocations are not shared across
    workers. Used in tests and when ``ALLOW_REDIS_FALLBACK_DEV`` is set.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if time.monotonic() >= deadline:
            del self._entries[key]
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def mark_refresh_active(
        self, audience: Audience, token_hash: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        with self._lock:
            self._entries[refresh_key(audience, token_hash)] = (
                REFRESH_ACTIVE,
                time.monotonic() + ttl,
            )

    async def is_refresh_active(self, audience: Audience, token_hash: str) -> bool:
        with self._lock:
            return self._get_live(refresh_key(audience, token_hash)) == REFRESH_ACTIVE

    async def consume_refresh(self, audience: Audience, token_hash: str) -> bool:
        key = refresh_key(audience, token_hash)
        with self._lock:
            if self._get_live(key) is None:
                return False
            del self._entries[key]
            return True

    async def revoke_refresh(self, audience: Audience, token_hash: str) -> None:
        with self._lock:
            self._entries.pop(refresh_key(audience, token_hash), None)

    async def stash_ceremony(
        self, key: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._entries[key] = (
                json.dumps(payload),
                time.monotonic() + max(1, int(ttl_seconds)),
            )

    async def pop_ceremony(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cached = self._get_live(key)
            self._entries.pop(key, None)
        if cached is None:
            return None
        return json.loads(cached)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
