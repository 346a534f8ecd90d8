from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Audience(str, Enum):
    """Population a session belongs to."""

    BACKOFFICE = "backoffice"
    CIDADAO = "cidadao"

    @classmethod
    def parse(cls, value: "Audience | str | None") -> Optional["Audience"]:
        if isinstance(value, Audience):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class GrantRole(str, Enum):
    ATENDENTE = "ATENDENTE"
    SECRETARIO = "SECRETARIO"
    PREFEITO = "PREFEITO"
    ADMIN_TEC = "ADMIN_TEC"


ROLE_PROFESSOR = "PROFESSOR"
ROLE_CIDADAO = "CIDADAO"


@dataclass
class Identity:
    id: str
    name: str
    email: Optional[str]
    password_hash: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class StaffUser(Identity):
    """Internal staff account; always has an email and a password hash."""


@dataclass
class Citizen(Identity):
    """Public account; email and password may be missing (e.g. imported records)."""


@dataclass
class RoleGrant:
    user_id: str
    secretaria_id: str
    secretaria_name: str
    secretaria_slug: str
    role: str


@dataclass
class RefreshTokenRecord:
    id: str
    subject: str
    audience: Audience
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False

    @classmethod
    def new(
        cls, subject: str, audience: Audience, token_hash: str, expires_at: datetime
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            subject=subject,
            audience=audience,
            token_hash=token_hash,
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class PasskeyCredential:
    id: str
    owner_id: str
    credential_id: bytes
    public_key: bytes
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    aaguid: Optional[bytes] = None
    nickname: Optional[str] = None
    cloned: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SecretariaAssignment:
    id: str
    name: str
    slug: str
    role: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "nome": self.name, "slug": self.slug, "papel": self.role}


@dataclass
class StaffProfile:
    id: str
    name: str
    email: str
    secretarias: List[SecretariaAssignment] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "nome": self.name,
            "email": self.email,
            "secretarias": [s.to_dict() for s in self.secretarias],
        }


@dataclass
class CitizenProfile:
    id: str
    name: str
    email: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"id": self.id, "nome": self.name, "email": self.email}


@dataclass
class LoginResult:
    audience: Audience
    subject: str
    roles: List[str]
    profile: StaffProfile | CitizenProfile
    access_token: str = field(repr=False)
    access_expires_at: datetime
    refresh_token: str = field(repr=False)
    refresh_expires_at: datetime
    refresh_hash: str = field(repr=False, default="")
