import pytest

from core.exceptions import (
    ERROR_STATUS_CODES,
    Conflict,
    CustomerBanned,
    ErrorKind,
    Forbidden,
    InternalError,
    InvalidStateTransition,
    LaneEngineException,
    NoAvailableResources,
    NotFound,
    PastDueBlocked,
    PaymentIntentNotFound,
    RenewalLimitExceeded,
    ResourceAlreadyAssigned,
    ResourceNotFound,
    SelectionAlreadyLocked,
    SessionNotFound,
    Unauthorized,
    ValidationFailed,
)
from api.errors import to_http_exception


def test_every_kind_has_a_status():
    assert set(ERROR_STATUS_CODES) == set(ErrorKind)


@pytest.mark.parametrize("exc,status", [
    (ValidationFailed("bad"), 400),
    (InvalidStateTransition("bad edge"), 400),
    (RenewalLimitExceeded("too long"), 400),
    (Unauthorized("pin"), 401),
    (Forbidden("role"), 403),
    (CustomerBanned("banned"), 403),
    (PastDueBlocked(), 403),
    (NotFound("missing"), 404),
    (SessionNotFound("lane-1"), 404),
    (ResourceNotFound("room", "abc"), 404),
    (PaymentIntentNotFound("abc"), 404),
    (Conflict("race"), 409),
    (SelectionAlreadyLocked(), 409),
    (ResourceAlreadyAssigned("taken"), 409),
    (NoAvailableResources("none"), 409),
    (InternalError("boom"), 500),
])
def test_status_codes(exc, status):
    assert isinstance(exc, LaneEngineException)
    assert exc.status_code == status


def test_http_exception_detail_includes_code_when_present():
    http = to_http_exception(ResourceAlreadyAssigned("Room 101 is already assigned"))
    assert http.status_code == 409
    assert http.detail == {
        "kind": "CONFLICT",
        "message": "Room 101 is already assigned",
        "code": "RESOURCE_ALREADY_ASSIGNED",
    }

    plain = to_http_exception(ValidationFailed("Signature is required"))
    assert plain.detail == {"kind": "VALIDATION", "message": "Signature is required"}
