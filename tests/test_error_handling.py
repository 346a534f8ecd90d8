"""Tests for mapping core exceptions onto the error envelope."""

import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from municipio_auth.service.error_handling import (
    Envelope,
    ErrorBody,
    error_response,
    ok_envelope,
)
from municipio_auth.service.errors import (
    AccountDisabledError,
    ClonedCredentialError,
    ConflictError,
    InvalidCredentialsError,
    NoEligibleRolesError,
    NotFoundError,
    RefreshInvalidError,
    ValidationError,
)
from municipio_auth.storage.errors import ConstraintViolation


def test_envelope_rejects_unknown_status():
    with pytest.raises(PydanticValidationError):
        Envelope(status="maybe")


def test_ok_envelope_carries_request_id():
    envelope = ok_envelope({"roles": ["CIDADAO"]})
    assert envelope.status == "ok"
    assert envelope.data == {"roles": ["CIDADAO"]}
    assert envelope.error is None
    assert envelope.request_id


@pytest.mark.parametrize(
    "exc, status, code",
    [
        (InvalidCredentialsError(), 401, "invalid_credentials"),
        (NoEligibleRolesError(), 401, "no_eligible_roles"),
        (RefreshInvalidError(), 401, "refresh_invalid"),
        (ClonedCredentialError(), 401, "cloned_credential"),
        (AccountDisabledError(), 403, "account_disabled"),
        (ValidationError("bad audience"), 400, "validation_error"),
        (NotFoundError("profile not found"), 404, "not_found"),
        (ConflictError("email already exists"), 409, "conflict"),
    ],
)
def test_service_errors_keep_their_status_and_code(exc, status, code):
    status_code, envelope = error_response(exc)
    assert status_code == status
    assert envelope.status == "error"
    assert envelope.error.code == code


def test_invalid_credentials_message_is_generic():
    _, envelope = error_response(InvalidCredentialsError())
    assert envelope.error.message == "invalid credentials"


def test_constraint_violation_becomes_conflict():
    status_code, envelope = error_response(
        ConstraintViolation("email already exists", {"field": "email"})
    )
    assert status_code == 409
    assert envelope.error.details == {"field": "email"}


def test_timeout_becomes_504():
    status_code, envelope = error_response(asyncio.TimeoutError())
    assert status_code == 504
    assert envelope.error.code == "timeout"


def test_unexpected_errors_do_not_leak_text():
    status_code, envelope = error_response(RuntimeError("dsn=postgres://user:pw@db"))
    assert status_code == 500
    assert envelope.error == ErrorBody(code="server_error", message="internal server error")
