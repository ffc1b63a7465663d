"""Tests for the booking route and its two caller conventions."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from receptionist.api.routes import booking_routes
from receptionist.config.settings import settings
from receptionist.core.auth import create_access_token
from receptionist.core.exceptions import BookingApiError

ORG_ID = uuid.uuid4()


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(booking_routes.router)
    return TestClient(app)


@pytest.fixture
def forward():
    with patch.object(booking_routes.booking_client, "forward_to_backend", new_callable=AsyncMock) as mock:
        mock.return_value = ([{"PatNum": 7, "LName": "Lee"}], 200)
        yield mock


def _service_headers(organization_id=ORG_ID):
    return {"X-Internal-Key": settings.internal_api_key, "X-Organization-Id": str(organization_id)}


def _body(function_name="GetMultiplePatients", **parameters):
    return {"functionName": function_name, "parameters": parameters or {"LName": "Lee"}, "sessionId": "s-1"}


class TestAuthentication:
    def test_missing_credentials(self, client, forward):
        response = client.post("/api/v1/booking", json=_body())

        assert response.status_code == 401
        forward.assert_not_awaited()

    def test_both_conventions_rejected(self, client, forward):
        token = create_access_token({"sub": "user-1", "org": ORG_ID})
        headers = {**_service_headers(), "Authorization": f"Bearer {token}"}

        response = client.post("/api/v1/booking", json=_body(), headers=headers)

        assert response.status_code == 400

    def test_wrong_internal_key(self, client, forward):
        headers = {"X-Internal-Key": "nope", "X-Organization-Id": str(ORG_ID)}

        assert client.post("/api/v1/booking", json=_body(), headers=headers).status_code == 401

    def test_service_caller_needs_valid_tenant_header(self, client, forward):
        headers = {"X-Internal-Key": settings.internal_api_key, "X-Organization-Id": "not-a-uuid"}

        assert client.post("/api/v1/booking", json=_body(), headers=headers).status_code == 400

    def test_browser_token_without_org_claim(self, client, forward):
        token = create_access_token({"sub": "user-1"})

        response = client.post("/api/v1/booking", json=_body(), headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403

    def test_browser_cookie_tenant_comes_from_claim(self, client, forward):
        token = create_access_token({"sub": "user-1", "org": ORG_ID})
        client.cookies.set(settings.session_cookie_name, token)

        response = client.post("/api/v1/booking", json=_body())

        assert response.status_code == 200
        assert forward.await_args.args[2] == ORG_ID


class TestExecution:
    def test_tenant_fields_in_body_are_ignored(self, client, forward):
        other_org = str(uuid.uuid4())

        response = client.post(
            "/api/v1/booking",
            json=_body(LName="Lee", organization_id=other_org, organizationId=other_org),
            headers=_service_headers(),
        )

        assert response.status_code == 200
        function_name, parameters, organization_id = forward.await_args.args
        assert function_name == "GetMultiplePatients"
        assert parameters == {"LName": "Lee"}
        assert organization_id == ORG_ID
        assert response.json() == {"success": True, "result": [{"PatNum": 7, "LName": "Lee"}], "error": None}

    def test_validation_error_is_200_with_details(self, client, forward):
        response = client.post(
            "/api/v1/booking", json=_body("CreateAppointment", PatNum=7), headers=_service_headers()
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"]["validationError"] is True
        assert "AptDateTime" in data["error"]["missingFields"]
        forward.assert_not_awaited()

    @pytest.mark.parametrize("function_name", ["DropTables", "FindFirstAvailableSlot"])
    def test_unknown_or_local_function_is_404(self, client, forward, function_name):
        response = client.post("/api/v1/booking", json=_body(function_name), headers=_service_headers())

        assert response.status_code == 404

    def test_backend_error_status(self, client, forward):
        forward.return_value = ({"error": "Patient locked"}, 409)

        data = client.post("/api/v1/booking", json=_body(), headers=_service_headers()).json()

        assert data["success"] is False
        assert data["error"] == {"message": "Patient locked", "status": 409}

    def test_backend_unreachable(self, client, forward):
        forward.side_effect = BookingApiError("Booking API unreachable", status_code=503)

        data = client.post("/api/v1/booking", json=_body(), headers=_service_headers()).json()

        assert data["success"] is False
        assert data["error"]["status"] == 503

    def test_wrapped_backend_payload_passes_through(self, client, forward):
        forward.return_value = ({"success": True, "result": {"AptNum": 99}}, 201)

        data = client.post("/api/v1/booking", json=_body(), headers=_service_headers()).json()

        assert data == {"success": True, "result": {"AptNum": 99}, "error": None}
