from __future__ import annotations

from typing import List, Optional, Tuple, Union

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from municipio_auth.logging import get_logger
from municipio_auth.storage.common import normalize_email, safe_row_value
from municipio_auth.storage.errors import ConstraintViolation
from municipio_auth.storage.models import (
    Audience,
    Citizen,
    PasskeyCredential,
    RefreshTokenRecord,
    RoleGrant,
    StaffUser,
    utcnow,
)

REQUIRED_TABLES = (
    "usuarios",
    "cidadaos",
    "secretarias",
    "usuarios_secretarias",
    "professores_turmas",
    "tokens_refresh",
    "webauthn_credentials",
)

_PASSKEY_COLUMNS = (
    "id, usuario_id, credential_id, public_key, sign_count, transports, aaguid, "
    "nickname, cloned, created_at, updated_at"
)
_REFRESH_COLUMNS = "id, subject, audience, token_hash, expiracao, criado_em, revogado"


class PostgresStore:
    """Postgres-backed credential store.

    Every connection carries a ``statement_timeout`` so a stalled query is
    cancelled server-side instead of pinning a pool slot.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the credential tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply municipio_auth/storage/schema.sql.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _staff_from_row(row: dict) -> StaffUser:
        return StaffUser(
            id=str(row["id"]),
            name=row.get("nome") or "",
            email=row["email"],
            password_hash=row.get("senha_hash"),
            is_active=bool(row.get("ativo", True)),
            created_at=safe_row_value(row, "criado_em", utcnow()),
        )

    @staticmethod
    def _citizen_from_row(row: dict) -> Citizen:
        return Citizen(
            id=str(row["id"]),
            name=row.get("nome") or "",
            email=row.get("email"),
            password_hash=row.get("senha_hash"),
            is_active=bool(row.get("ativo", True)),
            created_at=safe_row_value(row, "criado_em", utcnow()),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            subject=str(row["subject"]),
            audience=Audience(row["audience"]),
            token_hash=row["token_hash"],
            expires_at=row["expiracao"],
            created_at=safe_row_value(row, "criado_em", utcnow()),
            revoked=bool(row.get("revogado", False)),
        )

    @staticmethod
    def _passkey_from_row(row: dict) -> PasskeyCredential:
        aaguid = row.get("aaguid")
        created_at = safe_row_value(row, "created_at", utcnow())
        return PasskeyCredential(
            id=str(row["id"]),
            owner_id=str(row["usuario_id"]),
            credential_id=bytes(row["credential_id"]),
            public_key=bytes(row["public_key"]),
            sign_count=int(row.get("sign_count") or 0),
            transports=list(row.get("transports") or []),
            aaguid=bytes(aaguid) if aaguid is not None else None,
            nickname=row.get("nickname"),
            cloned=bool(row.get("cloned", False)),
            created_at=created_at,
            updated_at=safe_row_value(row, "updated_at", created_at),
        )

    # -- identities -------------------------------------------------------

    def get_staff_by_email(self, email: str) -> Optional[StaffUser]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, nome, email, senha_hash, ativo, criado_em FROM usuarios WHERE email = %s",
                (normalized,),
            ).fetchone()
        return self._staff_from_row(row) if row else None

    def get_staff_by_id(self, user_id: str) -> Optional[StaffUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, nome, email, senha_hash, ativo, criado_em FROM usuarios WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._staff_from_row(row) if row else None

    def get_citizen_by_email(self, email: str) -> Optional[Citizen]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, nome, email, senha_hash, ativo, criado_em FROM cidadaos WHERE email = %s",
                (normalized,),
            ).fetchone()
        return self._citizen_from_row(row) if row else None

    def get_citizen_by_id(self, user_id: str) -> Optional[Citizen]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, nome, email, senha_hash, ativo, criado_em FROM cidadaos WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._citizen_from_row(row) if row else None

    def update_profile(
        self, audience: Audience, user_id: str, name: str, email: Optional[str]
    ) -> Optional[Union[StaffUser, Citizen]]:
        table = "usuarios" if audience == Audience.BACKOFFICE else "cidadaos"
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE {table}
                    SET nome = %s, email = %s
                    WHERE id = %s
                    RETURNING id, nome, email, senha_hash, ativo, criado_em
                    """,
                    (name, normalized, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.NotNullViolation:
            raise ConstraintViolation("email required", {"field": "email"})
        if not row:
            return None
        if audience == Audience.BACKOFFICE:
            return self._staff_from_row(row)
        return self._citizen_from_row(row)

    # -- roles ------------------------------------------------------------

    def list_role_grants(self, user_id: str) -> List[RoleGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT us.secretaria_id, s.nome AS secretaria, s.slug, us.papel
                FROM usuarios_secretarias us
                JOIN secretarias s ON s.id = us.secretaria_id
                WHERE us.usuario_id = %s
                ORDER BY s.nome
                """,
                (user_id,),
            ).fetchall()
        return [
            RoleGrant(
                user_id=user_id,
                secretaria_id=str(row["secretaria_id"]),
                secretaria_name=row.get("secretaria") or "",
                secretaria_slug=row.get("slug") or "",
                role=row.get("papel") or "",
            )
            for row in rows
        ]

    def has_teaching_assignment(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM professores_turmas WHERE professor_id = %s) AS teaches",
                (user_id,),
            ).fetchone()
        return bool(row and row.get("teaches"))

    # -- refresh tokens ---------------------------------------------------

    def insert_refresh_token(
        self, record: RefreshTokenRecord, *, invalidate_others: bool = True
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    f"""
                    INSERT INTO tokens_refresh ({_REFRESH_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, FALSE)
                    """,
                    (
                        record.id,
                        record.subject,
                        record.audience.value,
                        record.token_hash,
                        record.expires_at,
                        record.created_at,
                    ),
                )
                if invalidate_others:
                    conn.execute(
                        """
                        UPDATE tokens_refresh SET revogado = TRUE
                        WHERE subject = %s AND audience = %s AND token_hash <> %s AND revogado = FALSE
                        """,
                        (record.subject, record.audience.value, record.token_hash),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            )
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM tokens_refresh WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE tokens_refresh SET revogado = TRUE WHERE token_hash = %s AND revogado = FALSE",
                (token_hash,),
            )
            return cur.rowcount == 1

    def invalidate_other_refresh_tokens(
        self, subject: str, audience: Audience, except_hash: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tokens_refresh SET revogado = TRUE
                WHERE subject = %s AND audience = %s AND token_hash <> %s AND revogado = FALSE
                """,
                (subject, audience.value, except_hash),
            )
            return max(cur.rowcount, 0)

    # -- passkeys ---------------------------------------------------------

    def insert_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO webauthn_credentials (id, usuario_id, credential_id, public_key, sign_count, transports, aaguid, nickname, cloned)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_PASSKEY_COLUMNS}
                    """,
                    (
                        credential.id,
                        credential.owner_id,
                        credential.credential_id,
                        credential.public_key,
                        credential.sign_count,
                        list(credential.transports),
                        credential.aaguid,
                        credential.nickname,
                        credential.cloned,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "credential id already registered", {"field": "credential_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "passkey owner missing", {"owner_id": credential.owner_id}
            )
        return self._passkey_from_row(row) if row else credential

    def get_passkey_by_credential_id(
        self, credential_id: bytes
    ) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_PASSKEY_COLUMNS} FROM webauthn_credentials WHERE credential_id = %s",
                (credential_id,),
            ).fetchone()
        return self._passkey_from_row(row) if row else None

    def list_passkeys(self, owner_id: str) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PASSKEY_COLUMNS} FROM webauthn_credentials
                WHERE usuario_id = %s
                ORDER BY created_at
                """,
                (owner_id,),
            ).fetchall()
        return [self._passkey_from_row(row) for row in rows]

    def advance_passkey_counter(
        self, credential_id: bytes, new_counter: int
    ) -> Optional[Tuple[PasskeyCredential, bool]]:
        # The row lock taken by the first UPDATE makes a concurrent caller
        # re-check sign_count after this transaction commits
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE webauthn_credentials
                SET sign_count = %s, updated_at = now()
                WHERE credential_id = %s AND sign_count < %s
                RETURNING {_PASSKEY_COLUMNS}
                """,
                (new_counter, credential_id, new_counter),
            ).fetchone()
            if row:
                return self._passkey_from_row(row), True
            row = conn.execute(
                f"""
                UPDATE webauthn_credentials
                SET cloned = TRUE, updated_at = now()
                WHERE credential_id = %s
                RETURNING {_PASSKEY_COLUMNS}
                """,
                (credential_id,),
            ).fetchone()
        return (self._passkey_from_row(row), False) if row else None

    def delete_passkey(self, passkey_id: str, owner_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM webauthn_credentials WHERE id = %s AND usuario_id = %s",
                (passkey_id, owner_id),
            )
            return cur.rowcount == 1
