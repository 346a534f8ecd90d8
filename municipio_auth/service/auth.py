from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from municipio_auth.logging import get_logger, hash_prefix
from municipio_auth.service.errors import (
    AccountDisabledError,
    ClonedCredentialError,
    ConflictError,
    InvalidCredentialsError,
    NoEligibleRolesError,
    NotFoundError,
    RefreshInvalidError,
    ServiceError,
    ValidationError,
)
from municipio_auth.service.passkeys import PasskeyCredentialManager
from municipio_auth.service.passwords import PasswordVerifier
from municipio_auth.service.roles import RoleResolver
from municipio_auth.service.tokens import TokenIssuer, hash_token
from municipio_auth.storage.common import CredentialStore, normalize_email
from municipio_auth.storage.errors import ConstraintViolation
from municipio_auth.storage.models import (
    ROLE_CIDADAO,
    Audience,
    Citizen,
    CitizenProfile,
    LoginResult,
    RefreshTokenRecord,
    RoleGrant,
    SecretariaAssignment,
    StaffProfile,
    StaffUser,
)

logger = get_logger(__name__)

T = TypeVar("T")

Identity = Union[StaffUser, Citizen]
Profile = Union[StaffProfile, CitizenProfile]


@dataclass
class PasswordCredentials:
    email: str
    password: str = field(repr=False)


def _staff_profile(user: StaffUser, grants: Sequence[RoleGrant]) -> StaffProfile:
    return StaffProfile(
        id=user.id,
        name=user.name,
        email=user.email or "",
        secretarias=[
            SecretariaAssignment(
                id=g.secretaria_id,
                name=g.secretaria_name,
                slug=g.secretaria_slug,
                role=g.role,
            )
            for g in grants
        ],
    )


def _citizen_profile(citizen: Citizen) -> CitizenProfile:
    return CitizenProfile(id=citizen.id, name=citizen.name, email=citizen.email)


class SessionLifecycleManager:
    """Login, refresh rotation, logout and profile reads for both audiences.

    Every public coroutine is bounded by ``timeout`` (or the configured
    default). Store calls run in worker threads; multi-row writes are a
    single store transaction, so a cancelled call never leaves half a
    rotation behind.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: Any,
        tokens: TokenIssuer,
        passwords: PasswordVerifier,
        roles: RoleResolver,
        passkeys: PasskeyCredentialManager,
        *,
        operation_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.passwords = passwords
        self.roles = roles
        self.passkeys = passkeys
        self.operation_timeout = operation_timeout

    # -- plumbing ---------------------------------------------------------

    async def _bounded(self, coro: Awaitable[T], timeout: Optional[float]) -> T:
        limit = self.operation_timeout if timeout is None else timeout
        return await asyncio.wait_for(coro, timeout=limit)

    async def _guard(self, event: str, awaitable: Awaitable[T]) -> T:
        """Await a store/cache call, logging infrastructure failures before re-raising."""
        try:
            return await awaitable
        except (ServiceError, ConstraintViolation, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.error(
                f"{event}_storage_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def _store(self, event: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await self._guard(event, asyncio.to_thread(fn, *args, **kwargs))

    @staticmethod
    def _parse_audience(audience: Union[Audience, str]) -> Audience:
        parsed = Audience.parse(audience)
        if parsed is None:
            raise ValidationError("unknown audience", detail={"audience": str(audience)})
        return parsed

    async def _load_identity(self, event: str, audience: Audience, subject: str) -> Optional[Identity]:
        if audience == Audience.BACKOFFICE:
            return await self._store(event, self.store.get_staff_by_id, subject)
        return await self._store(event, self.store.get_citizen_by_id, subject)

    async def _roles_and_profile(
        self, event: str, audience: Audience, identity: Identity
    ) -> Tuple[List[str], Profile]:
        if audience == Audience.CIDADAO:
            return [ROLE_CIDADAO], _citizen_profile(identity)  # type: ignore[arg-type]
        roles, grants = await self._store(event, self.roles.resolve_with_grants, identity.id)
        return roles, _staff_profile(identity, grants)  # type: ignore[arg-type]

    def _mint(
        self, audience: Audience, subject: str, roles: List[str], profile: Profile
    ) -> Tuple[LoginResult, RefreshTokenRecord]:
        access_token, access_expires_at = self.tokens.issue_access_token(subject, audience, roles)
        raw_refresh, refresh_hash = self.tokens.issue_refresh_token()
        now = self.tokens.now()
        record = RefreshTokenRecord.new(
            subject, audience, refresh_hash, self.tokens.refresh_expiry(now)
        )
        record.created_at = now
        result = LoginResult(
            audience=audience,
            subject=subject,
            roles=list(roles),
            profile=profile,
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=raw_refresh,
            refresh_expires_at=record.expires_at,
            refresh_hash=refresh_hash,
        )
        return result, record

    async def _start_session(
        self, event: str, audience: Audience, subject: str, roles: List[str], profile: Profile
    ) -> LoginResult:
        """Persist a new refresh record (revoking siblings) and mark it active."""
        result, record = self._mint(audience, subject, roles, profile)
        await self._store(event, self.store.insert_refresh_token, record, invalidate_others=True)
        await self._guard(
            event, self.cache.mark_refresh_active(audience, record.token_hash, record.expires_at)
        )
        return result

    # -- login ------------------------------------------------------------

    async def login(
        self,
        audience: Union[Audience, str],
        credentials: PasswordCredentials,
        *,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        aud = self._parse_audience(audience)
        return await self._bounded(self._login(aud, credentials), timeout)

    async def _login(self, audience: Audience, credentials: PasswordCredentials) -> LoginResult:
        email = normalize_email(credentials.email)
        password = credentials.password or ""
        identity: Optional[Identity] = None
        if email:
            lookup = (
                self.store.get_staff_by_email
                if audience == Audience.BACKOFFICE
                else self.store.get_citizen_by_email
            )
            identity = await self._store("login", lookup, email)

        if identity is None or not identity.password_hash or not password:
            verify_dummy = getattr(self.passwords, "verify_dummy", None)
            if verify_dummy is not None:
                await asyncio.to_thread(verify_dummy, password)
            logger.warning("login_rejected", audience=audience.value, reason="invalid_credentials")
            raise InvalidCredentialsError()

        if not await asyncio.to_thread(self.passwords.verify, password, identity.password_hash):
            logger.warning(
                "login_rejected",
                audience=audience.value,
                subject=identity.id,
                reason="invalid_credentials",
            )
            raise InvalidCredentialsError()

        if not identity.is_active:
            logger.warning(
                "login_rejected", audience=audience.value, subject=identity.id, reason="account_disabled"
            )
            raise AccountDisabledError()

        roles, profile = await self._roles_and_profile("login", audience, identity)
        if not roles:
            logger.warning(
                "login_rejected", audience=audience.value, subject=identity.id, reason="no_eligible_roles"
            )
            raise NoEligibleRolesError()

        result = await self._start_session("login", audience, identity.id, roles, profile)
        logger.info(
            "login_succeeded",
            audience=audience.value,
            subject=identity.id,
            roles=roles,
            hash_prefix=hash_prefix(result.refresh_hash),
        )
        return result

    async def login_with_passkey(
        self,
        credential_id: bytes,
        sign_count: int,
        *,
        expected_owner_id: Optional[str] = None,
        allow_cloned: bool = False,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        """Complete a staff login after an upstream-verified passkey assertion.

        The reported counter is recorded first, so a regression is flagged
        even when the login is then refused.
        """
        return await self._bounded(
            self._login_with_passkey(credential_id, sign_count, expected_owner_id, allow_cloned),
            timeout,
        )

    async def _login_with_passkey(
        self,
        credential_id: bytes,
        sign_count: int,
        expected_owner_id: Optional[str],
        allow_cloned: bool,
    ) -> LoginResult:
        audience = Audience.BACKOFFICE
        try:
            passkey = await self.passkeys.update_counter(credential_id, sign_count)
        except NotFoundError:
            logger.warning("passkey_login_rejected", reason="unknown_credential")
            raise InvalidCredentialsError()
        if expected_owner_id is not None and passkey.owner_id != expected_owner_id:
            logger.warning("passkey_login_rejected", passkey_id=passkey.id, reason="owner_mismatch")
            raise InvalidCredentialsError()
        if passkey.cloned and not allow_cloned:
            logger.warning(
                "passkey_login_rejected", passkey_id=passkey.id, subject=passkey.owner_id, reason="cloned"
            )
            raise ClonedCredentialError()

        user = await self._store("passkey_login", self.store.get_staff_by_id, passkey.owner_id)
        if user is None:
            raise InvalidCredentialsError()
        if not user.is_active:
            raise AccountDisabledError()
        roles, profile = await self._roles_and_profile("passkey_login", audience, user)
        if not roles:
            raise NoEligibleRolesError()

        result = await self._start_session("passkey_login", audience, user.id, roles, profile)
        logger.info(
            "passkey_login_succeeded",
            subject=user.id,
            passkey_id=passkey.id,
            hash_prefix=hash_prefix(result.refresh_hash),
        )
        return result

    # -- refresh ----------------------------------------------------------

    async def refresh(
        self,
        audience: Union[Audience, str],
        raw_token: str,
        *,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        aud = Audience.parse(audience)
        if aud is None:
            raise RefreshInvalidError()
        return await self._bounded(self._refresh(aud, raw_token), timeout)

    def _reject_refresh(self, reason: str, token_hash: Optional[str]) -> RefreshInvalidError:
        logger.warning("refresh_rejected", reason=reason, hash_prefix=hash_prefix(token_hash))
        return RefreshInvalidError()

    async def _refresh(self, audience: Audience, raw_token: str) -> LoginResult:
        if not raw_token or not raw_token.strip():
            raise self._reject_refresh("empty", None)
        old_hash = hash_token(raw_token.strip())

        record = await self._store("refresh", self.store.get_refresh_token_by_hash, old_hash)
        if record is None:
            raise self._reject_refresh("unknown", old_hash)
        if record.revoked:
            raise self._reject_refresh("revoked", old_hash)
        if record.is_expired(self.tokens.now()):
            raise self._reject_refresh("expired", old_hash)
        if record.audience != audience:
            raise self._reject_refresh("audience_mismatch", old_hash)
        if not await self._guard("refresh", self.cache.is_refresh_active(audience, old_hash)):
            raise self._reject_refresh("not_active", old_hash)

        identity = await self._load_identity("refresh", audience, record.subject)
        if identity is None:
            raise self._reject_refresh("subject_missing", old_hash)
        if not identity.is_active:
            logger.warning("refresh_rejected", reason="account_disabled", subject=identity.id)
            raise AccountDisabledError()
        roles, profile = await self._roles_and_profile("refresh", audience, identity)
        if not roles:
            logger.warning("refresh_rejected", reason="no_eligible_roles", subject=identity.id)
            raise NoEligibleRolesError()

        # Only the caller that deletes the active marker may rotate
        if not await self._guard("refresh", self.cache.consume_refresh(audience, old_hash)):
            raise self._reject_refresh("race_lost", old_hash)

        result, new_record = self._mint(audience, identity.id, roles, profile)
        await self._store(
            "refresh", self.store.insert_refresh_token, new_record, invalidate_others=True
        )
        await self._store("refresh", self.store.revoke_refresh_token, old_hash)
        await self._guard(
            "refresh",
            self.cache.mark_refresh_active(audience, new_record.token_hash, new_record.expires_at),
        )
        logger.info(
            "refresh_rotated",
            audience=audience.value,
            subject=identity.id,
            previous=hash_prefix(old_hash),
            hash_prefix=hash_prefix(new_record.token_hash),
        )
        return result

    # -- logout -----------------------------------------------------------

    async def logout(
        self,
        audience: Union[Audience, str],
        raw_token: str,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        aud = Audience.parse(audience)
        if aud is None:
            raise RefreshInvalidError()
        await self._bounded(self._logout(aud, raw_token), timeout)

    async def _logout(self, audience: Audience, raw_token: str) -> None:
        if not raw_token or not raw_token.strip():
            return
        token_hash = hash_token(raw_token.strip())
        revoked = await self._store("logout", self.store.revoke_refresh_token, token_hash)
        await self._guard("logout", self.cache.revoke_refresh(audience, token_hash))
        logger.info(
            "logout_completed",
            audience=audience.value,
            revoked=revoked,
            hash_prefix=hash_prefix(token_hash),
        )

    # -- profile ----------------------------------------------------------

    async def get_profile(
        self,
        audience: Union[Audience, str],
        subject: str,
        *,
        timeout: Optional[float] = None,
    ) -> Tuple[Profile, List[str]]:
        """Current profile and freshly derived roles for ``subject``."""
        aud = self._parse_audience(audience)
        return await self._bounded(self._get_profile(aud, subject), timeout)

    async def _get_profile(self, audience: Audience, subject: str) -> Tuple[Profile, List[str]]:
        identity = await self._load_identity("profile", audience, subject)
        if identity is None:
            raise NotFoundError("identity not found")
        roles, profile = await self._roles_and_profile("profile", audience, identity)
        if not roles:
            raise NoEligibleRolesError()
        return profile, roles

    async def update_profile(
        self,
        audience: Union[Audience, str],
        subject: str,
        name: str,
        email: Optional[str],
        *,
        timeout: Optional[float] = None,
    ) -> Profile:
        aud = self._parse_audience(audience)
        return await self._bounded(self._update_profile(aud, subject, name, email), timeout)

    async def _update_profile(
        self, audience: Audience, subject: str, name: str, email: Optional[str]
    ) -> Profile:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("name required", detail={"field": "nome"})
        clean_email = normalize_email(email)
        if clean_email is not None and "@" not in clean_email:
            raise ValidationError("invalid email", detail={"field": "email"})
        if audience == Audience.BACKOFFICE and clean_email is None:
            raise ValidationError("email required", detail={"field": "email"})
        try:
            updated = await self._store(
                "update_profile", self.store.update_profile, audience, subject, clean_name, clean_email
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("identity not found")
        logger.info("profile_updated", audience=audience.value, subject=subject)
        if audience == Audience.CIDADAO:
            return _citizen_profile(updated)  # type: ignore[arg-type]
        grants = await self._store("update_profile", self.store.list_role_grants, subject)
        return _staff_profile(updated, grants)  # type: ignore[arg-type]
