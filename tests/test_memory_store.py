import threading
from datetime import datetime, timedelta, timezone

import pytest

from municipio_auth.storage.errors import ConstraintViolation
from municipio_auth.storage.memory import MemoryCache, MemoryStore
from municipio_auth.storage.models import (
    Audience,
    GrantRole,
    PasskeyCredential,
    RefreshTokenRecord,
)


def _record(subject: str, token_hash: str, audience=Audience.BACKOFFICE) -> RefreshTokenRecord:
    return RefreshTokenRecord.new(
        subject, audience, token_hash, datetime.now(timezone.utc) + timedelta(days=1)
    )


def test_staff_email_is_unique_and_lowercased():
    store = MemoryStore()
    user = store.create_staff_user("Ana", " Ana@Prefeitura.gov.br ", "hash")
    assert user.email == "ana@prefeitura.gov.br"
    assert store.get_staff_by_email("ANA@prefeitura.gov.br").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_staff_user("Ana 2", "ana@prefeitura.gov.br", "hash")


def test_insert_refresh_token_invalidates_siblings_only():
    store = MemoryStore()
    store.insert_refresh_token(_record("u1", "h1"))
    store.insert_refresh_token(_record("u1", "h-cid", audience=Audience.CIDADAO))
    store.insert_refresh_token(_record("u2", "h-other"))
    store.insert_refresh_token(_record("u1", "h2"))

    assert store.get_refresh_token_by_hash("h1").revoked is True
    assert store.get_refresh_token_by_hash("h2").revoked is False
    assert store.get_refresh_token_by_hash("h-cid").revoked is False
    assert store.get_refresh_token_by_hash("h-other").revoked is False


def test_duplicate_refresh_hash_rejected():
    store = MemoryStore()
    store.insert_refresh_token(_record("u1", "h1"))
    with pytest.raises(ConstraintViolation):
        store.insert_refresh_token(_record("u1", "h1"))


def test_revoke_is_conditional():
    store = MemoryStore()
    store.insert_refresh_token(_record("u1", "h1"))
    assert store.revoke_refresh_token("h1") is True
    assert store.revoke_refresh_token("h1") is False
    assert store.revoke_refresh_token("missing") is False


def test_invalidate_other_refresh_tokens_counts():
    store = MemoryStore()
    store.insert_refresh_token(_record("u1", "h1"), invalidate_others=False)
    store.insert_refresh_token(_record("u1", "h2"), invalidate_others=False)
    store.insert_refresh_token(_record("u1", "h3"), invalidate_others=False)
    assert store.invalidate_other_refresh_tokens("u1", Audience.BACKOFFICE, "h3") == 2
    assert store.invalidate_other_refresh_tokens("u1", Audience.BACKOFFICE, "h3") == 0


def test_concurrent_revoke_has_one_winner():
    store = MemoryStore()
    store.insert_refresh_token(_record("u1", "h1"))
    results = []

    def worker():
        results.append(store.revoke_refresh_token("h1"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_staff_user("Ana", "ana@prefeitura.gov.br", "hash")
    store.add_role_grant(user.id, GrantRole.PREFEITO, secretaria_name="Gabinete", secretaria_slug="gabinete")
    store.add_teaching_assignment(user.id)
    store.create_citizen("Joao", None, None)
    store.insert_refresh_token(_record(user.id, "h1"))
    store.insert_passkey(
        PasskeyCredential(
            id="pk-1",
            owner_id=user.id,
            credential_id=b"\x00\x01cred",
            public_key=b"\xffkey",
            sign_count=4,
            transports=["usb"],
            aaguid=b"\x10" * 16,
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_staff_by_email("ana@prefeitura.gov.br").id == user.id
    assert reloaded.list_role_grants(user.id)[0].secretaria_slug == "gabinete"
    assert reloaded.has_teaching_assignment(user.id) is True
    assert len(reloaded.citizens) == 1
    record = reloaded.get_refresh_token_by_hash("h1")
    assert record.audience is Audience.BACKOFFICE
    assert record.expires_at.tzinfo is not None
    passkey = reloaded.get_passkey_by_credential_id(b"\x00\x01cred")
    assert passkey.public_key == b"\xffkey"
    assert passkey.aaguid == b"\x10" * 16
    assert passkey.sign_count == 4


def test_grants_require_existing_staff():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.add_role_grant("missing", GrantRole.SECRETARIO)
    with pytest.raises(ConstraintViolation):
        store.add_teaching_assignment("missing")


class TestMemoryCache:
    async def test_consume_is_single_shot(self):
        cache = MemoryCache()
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        await cache.mark_refresh_active(Audience.BACKOFFICE, "h1", expires)

        assert await cache.is_refresh_active(Audience.BACKOFFICE, "h1") is True
        assert await cache.is_refresh_active(Audience.CIDADAO, "h1") is False
        assert await cache.consume_refresh(Audience.BACKOFFICE, "h1") is True
        assert await cache.consume_refresh(Audience.BACKOFFICE, "h1") is False
        assert await cache.is_refresh_active(Audience.BACKOFFICE, "h1") is False

    async def test_revoke_missing_entry_is_noop(self):
        cache = MemoryCache()
        await cache.revoke_refresh(Audience.BACKOFFICE, "never")

    async def test_entries_expire_with_token(self):
        cache = MemoryCache()
        await cache.mark_refresh_active(
            Audience.BACKOFFICE, "h1", datetime.now(timezone.utc) + timedelta(hours=1)
        )
        key = "refresh:backoffice:h1"
        value, _ = cache._entries[key]
        cache._entries[key] = (value, 0.0)
        assert await cache.is_refresh_active(Audience.BACKOFFICE, "h1") is False


def test_advance_passkey_counter_admits_one_writer_per_value():
    store = MemoryStore()
    user = store.create_staff_user("Ana", "ana@prefeitura.gov.br", "hash")
    store.insert_passkey(
        PasskeyCredential(
            id="pk-1", owner_id=user.id, credential_id=b"cred", public_key=b"key", sign_count=5
        )
    )
    barrier = threading.Barrier(6)
    advanced = []

    def worker():
        barrier.wait()
        _, moved = store.advance_passkey_counter(b"cred", 6)
        advanced.append(moved)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert advanced.count(True) == 1
    stored = store.get_passkey_by_credential_id(b"cred")
    assert stored.sign_count == 6
    assert stored.cloned is True
    assert store.advance_passkey_counter(b"missing", 1) is None


def test_refresh_record_expires_strictly_after_expiry():
    record = _record("u1", "h1")
    assert record.is_expired(record.expires_at) is False
    assert record.is_expired(record.expires_at + timedelta(microseconds=1)) is True
