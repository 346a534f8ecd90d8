from municipio_auth.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    hash_prefix,
    set_correlation_id,
)


def test_credential_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_rejected",
            "email": "maria@prefeitura.gov.br",
            "refresh_token": "raw-token-value",
            "subject": "8d3c3a5e",
        },
    )
    assert event["email"] == "ma***br"
    assert event["refresh_token"] == "ra***ue"
    assert event["subject"] == "8d3c3a5e"


def test_hash_prefix_is_short():
    assert hash_prefix("abcdefghijklmnop") == "abcdefgh"
    assert hash_prefix(None) is None
    assert hash_prefix("") is None


def test_correlation_id_is_attached():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id("req-1")
        assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
    finally:
        correlation_id_var.reset(token)
