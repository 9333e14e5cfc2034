from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from turnflow.domain_errors import (
    AlreadyDecided,
    ApprovalRequired,
    Conflict,
    DomainError,
    Forbidden,
    NotFound,
    SequenceViolation,
    Unavailable,
    ValidationError,
)
from turnflow.problem_details import build_problem_details_response


def test_problem_details_payload_contains_stable_code_and_rfc7807_fields() -> None:
    response = build_problem_details_response(
        DomainError(
            code="PROBE_ERROR",
            http_status=409,
            message="probe failed",
            details={"probe": True},
        )
    )

    assert response.status_code == 409
    assert response.media_type == "application/problem+json"

    body = response.body.decode("utf-8")
    assert '"type":"https://api.turnflow.local/problems/probe_error"' in body
    assert '"title":"Conflict"' in body
    assert '"status":409' in body
    assert '"detail":"probe failed"' in body
    assert '"code":"PROBE_ERROR"' in body
    assert '"kind":"domain_error"' in body
    assert '"details":{"probe":true}' in body


def test_problem_details_omits_details_when_none() -> None:
    response = build_problem_details_response(
        ValidationError(code="NO_DETAILS", message="validation failed")
    )

    body = response.body.decode("utf-8")
    assert response.status_code == 400
    assert '"code":"NO_DETAILS"' in body
    assert '"kind":"validation_error"' in body
    assert '"details"' not in body


def test_taxonomy_maps_to_http_status_and_kind() -> None:
    cases = [
        (ValidationError("V", "v"), 400, "validation_error"),
        (NotFound("N", "n"), 404, "not_found"),
        (Forbidden("F", "f"), 403, "forbidden"),
        (Conflict("C", "c"), 409, "conflict"),
        (SequenceViolation("S", "s"), 409, "sequence_violation"),
        (AlreadyDecided("A", "a"), 409, "already_decided"),
        (Unavailable("U", "u"), 503, "unavailable"),
    ]
    for error, status, kind in cases:
        assert error.http_status == status
        assert error.kind == kind
        assert isinstance(error, DomainError)
    assert isinstance(SequenceViolation("S", "s"), Conflict)


def test_approval_required_names_outstanding_tiers() -> None:
    error = ApprovalRequired(["dfo", "ho"])

    assert isinstance(error, Conflict)
    assert error.http_status == 409
    assert error.code == "APPROVAL_REQUIRED"
    assert error.tiers == ["dfo", "ho"]
    assert str(error) == "Approval required: dfo, ho"

    body = build_problem_details_response(error).body.decode("utf-8")
    assert '"kind":"approval_required"' in body
    assert '"details":{"tiers":["dfo","ho"]}' in body


def test_fastapi_exception_handler_maps_domain_error_to_problem_details() -> None:
    app = FastAPI()

    async def _handle_domain_error(_: Request, exc: DomainError):
        return build_problem_details_response(exc)

    app.add_exception_handler(DomainError, _handle_domain_error)

    @app.get("/boom")
    def _boom():
        raise NotFound(
            code="ROUTE_PROBLEM",
            message="route failed",
            details={"source": "test"},
        )

    client = TestClient(app)
    response = client.get("/boom")

    assert response.status_code == 404
    assert response.headers["content-type"].startswith("application/problem+json")
    payload = response.json()
    assert payload["code"] == "ROUTE_PROBLEM"
    assert payload["detail"] == "route failed"
    assert payload["kind"] == "not_found"
