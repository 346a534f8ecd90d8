from __future__ import annotations

from typing import Iterable, List, Sequence

from municipio_auth.storage.common import CredentialStore
from municipio_auth.storage.models import (
    ROLE_CIDADAO,
    ROLE_PROFESSOR,
    Audience,
    GrantRole,
    RoleGrant,
)


def _normalize_role(role: str) -> str:
    return (role or "").strip().upper()


def normalize_roles(roles: Iterable[str]) -> List[str]:
    """Upper-case, trim, drop blanks and de-duplicate, keeping first-seen order."""
    seen: set[str] = set()
    normalized: List[str] = []
    for role in roles:
        label = _normalize_role(role)
        if not label or label in seen:
            continue
        seen.add(label)
        normalized.append(label)
    return normalized


def derive_staff_roles(grants: Sequence[RoleGrant], teaches: bool) -> List[str]:
    """Authorization roles for a staff member.

    ATENDENTE grants never reach the token. A teaching assignment adds
    PROFESSOR, and PROFESSOR always excludes ATENDENTE from the final set.
    """
    roles = [
        grant.role
        for grant in grants
        if _normalize_role(grant.role) not in ("", GrantRole.ATENDENTE.value)
    ]
    if teaches:
        roles.append(ROLE_PROFESSOR)
    roles = normalize_roles(roles)
    if ROLE_PROFESSOR in roles:
        roles = [r for r in roles if r != GrantRole.ATENDENTE.value]
    return roles


class RoleResolver:
    """Computes the current role set for a subject from durable state."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def resolve(self, audience: Audience, subject: str) -> List[str]:
        if audience == Audience.CIDADAO:
            return [ROLE_CIDADAO]
        grants = self.store.list_role_grants(subject)
        teaches = self.store.has_teaching_assignment(subject)
        return derive_staff_roles(grants, teaches)

    def resolve_with_grants(
        self, subject: str
    ) -> tuple[List[str], List[RoleGrant]]:
        """Staff roles plus the raw grants, for callers that also build a profile."""
        grants = self.store.list_role_grants(subject)
        teaches = self.store.has_teaching_assignment(subject)
        return derive_staff_roles(grants, teaches), grants
