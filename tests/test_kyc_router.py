"""
HTTP-level tests. Requests run in-process through httpx's ASGI transport with the
database session and KYC service swapped for the test fixtures.
"""
from itertools import count

import httpx
import pytest
from jose import jwt

from app.core.db import get_db
from app.main import app
from app.modules.compliance.exceptions import UpstreamUnavailable
from app.modules.compliance.service import get_kyc_service

API = "/api/v1"
REDIRECT = "https://app.example.com/kyc/done"

_client_ips = count(1)


def bearer(user):
    token = jwt.encode({"sub": str(user.id)}, "test-jwt-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(db, kyc):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_kyc_service] = lambda: kyc

    # Fresh client address per test so the in-process rate limiter never carries over
    transport = httpx.ASGITransport(app=app, client=(f"10.0.0.{next(_client_ips) % 250}", 50000))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def user_headers(user):
    return bearer(user)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


async def start_session(client, headers):
    response = await client.post(
        f"{API}/kyc/providers/sumsub/session", json={"redirectUrl": REDIRECT}, headers=headers
    )
    assert response.status_code == 200, response.text
    return response.json()["reference_id"]


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"{API}/kyc/me")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        response = await client.get(f"{API}/kyc/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user(self, client, db, user):
        headers = bearer(user)
        user.is_active = False
        await db.commit()

        response = await client.get(f"{API}/kyc/me", headers=headers)
        assert response.status_code == 400


class TestUserEndpoints:

    @pytest.mark.asyncio
    async def test_status_before_submission(self, client, user_headers):
        response = await client.get(f"{API}/kyc/me", headers=user_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "not_submitted"}

    @pytest.mark.asyncio
    async def test_submit_then_read(self, client, user_headers):
        response = await client.post(
            f"{API}/kyc/me", json={"documentType": "passport", "country": "us"}, headers=user_headers
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["country"] == "US"
        assert body["submitted_at"] is not None

        response = await client.get(f"{API}/kyc/me", headers=user_headers)
        assert response.json()["status"] == "pending"
        assert response.json()["document_type"] == "passport"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"documentType": "passport", "country": "USA"},
        {"country": "US"},
        {"documentType": "passport", "country": "US", "status": "verified"},
    ])
    async def test_invalid_submission_is_400(self, client, user_headers, payload):
        response = await client.post(f"{API}/kyc/me", json=payload, headers=user_headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_submit_while_verified_is_409(self, client, user, user_headers, admin_headers):
        await client.post(f"{API}/kyc/me", json={"documentType": "passport", "country": "US"}, headers=user_headers)
        await client.put(
            f"{API}/kyc/admin/records/{user.id}/status", json={"status": "verified"}, headers=admin_headers
        )

        response = await client.post(
            f"{API}/kyc/me", json={"documentType": "id_card", "country": "FR"}, headers=user_headers
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_start_session(self, client, user_headers):
        response = await client.post(
            f"{API}/kyc/providers/sumsub/session", json={"redirectUrl": REDIRECT}, headers=user_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["reference_id"] == "r1"
        assert body["redirect_url"] == "https://provider.example.com/session/r1"
        assert body["expires_at"]

        response = await client.get(f"{API}/kyc/me", headers=user_headers)
        assert response.json()["status"] == "pending"
        assert response.json()["provider_reference"] == "r1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider,redirect", [
        ("onfido", REDIRECT),
        ("sumsub", "http://app.example.com/kyc/done"),
    ])
    async def test_bad_session_request_is_400(self, client, user_headers, provider, redirect):
        response = await client.post(
            f"{API}/kyc/providers/{provider}/session", json={"redirectUrl": redirect}, headers=user_headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_provider_outage_is_503_with_retry_after(self, client, gateway, user_headers):
        async def broken(user_id, redirect_url):
            raise UpstreamUnavailable()

        gateway.start_session = broken
        response = await client.post(
            f"{API}/kyc/providers/sumsub/session", json={"redirectUrl": REDIRECT}, headers=user_headers
        )

        assert response.status_code == 503
        assert response.headers["retry-after"] == "30"


class TestWebhook:

    @pytest.mark.asyncio
    async def test_signed_callback_applies_once(self, client, user_headers, sign):
        reference = await start_session(client, user_headers)
        raw, digest = sign({"type": "applicantReviewed", "referenceId": reference, "status": "approved"})
        headers = {"X-Payload-Digest": digest, "Content-Type": "application/json"}

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=raw, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "verified", "changed": True}

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=raw, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "verified", "changed": False}

    @pytest.mark.asyncio
    async def test_digest_algorithm_header(self, client, user_headers, verifier):
        reference = await start_session(client, user_headers)
        raw = f'{{"referenceId":"{reference}","status":"rejected","rejectReason":"Expired"}}'.encode()

        response = await client.post(
            f"{API}/kyc/webhook/sumsub",
            content=raw,
            headers={
                "X-Payload-Digest": verifier.sign(raw, "HMAC_SHA256_HEX"),
                "X-Payload-Digest-Alg": "HMAC_SHA256_HEX",
            },
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_invalid_signature_is_403(self, client, user_headers, sign):
        reference = await start_session(client, user_headers)
        _, digest = sign({"referenceId": reference, "status": "rejected"})
        forged = f'{{"referenceId":"{reference}","status":"approved"}}'.encode()

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=forged, headers={"X-Payload-Digest": digest})
        assert response.status_code == 403
        assert response.json() == {"detail": "Invalid signature"}

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=forged)
        assert response.status_code == 403

        response = await client.get(f"{API}/kyc/me", headers=user_headers)
        assert response.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_reference_is_404(self, client, sign):
        raw, digest = sign({"referenceId": "sumsub_nobody", "status": "approved"})

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=raw, headers={"X-Payload-Digest": digest})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_reference_is_400(self, client, sign):
        raw, digest = sign({"status": "approved"})

        response = await client.post(f"{API}/kyc/webhook/sumsub", content=raw, headers={"X-Payload-Digest": digest})
        assert response.status_code == 400


class TestAdminEndpoints:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path", [
        ("GET", "/kyc/admin/records"),
        ("GET", "/kyc/admin/records/{user_id}"),
        ("PUT", "/kyc/admin/records/{user_id}/status"),
        ("POST", "/kyc/admin/records/{user_id}/sync"),
        ("GET", "/admin/audit-logs"),
    ])
    async def test_admin_only(self, client, user, user_headers, method, path):
        response = await client.request(
            method,
            API + path.format(user_id=user.id),
            json={"status": "verified"} if method == "PUT" else None,
            headers=user_headers,
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, user, user_headers, admin_headers):
        await client.post(f"{API}/kyc/me", json={"documentType": "passport", "country": "US"}, headers=user_headers)

        response = await client.get(f"{API}/kyc/admin/records", params={"status": "pending"}, headers=admin_headers)
        assert response.status_code == 200
        page = response.json()
        assert page["total"] == 1
        assert page["page"] == 1
        assert page["items"][0]["user_email"] == "alice@example.com"

        response = await client.get(f"{API}/kyc/admin/records", params={"status": "verified"}, headers=admin_headers)
        assert response.json()["total"] == 0

        response = await client.get(f"{API}/kyc/admin/records/{user.id}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_get_missing_record_is_404(self, client, user, admin_headers):
        response = await client.get(f"{API}/kyc/admin/records/{user.id}", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_override(self, client, user, user_headers, admin_headers):
        await client.post(f"{API}/kyc/me", json={"documentType": "passport", "country": "US"}, headers=user_headers)
        url = f"{API}/kyc/admin/records/{user.id}/status"

        response = await client.put(url, json={"status": "rejected"}, headers=admin_headers)
        assert response.status_code == 400

        response = await client.put(
            url, json={"status": "rejected", "rejectionReason": "Document expired"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Document expired"

    @pytest.mark.asyncio
    async def test_sync(self, client, gateway, user, user_headers, admin_headers):
        url = f"{API}/kyc/admin/records/{user.id}/sync"

        response = await client.post(url, headers=admin_headers)
        assert response.status_code == 404

        await start_session(client, user_headers)
        gateway.vendor_status = "approved"

        response = await client.post(url, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "verified"
        assert response.json()["provider_data"] == {"reviewStatus": "approved"}

    @pytest.mark.asyncio
    async def test_audit_trail(self, client, user, user_headers, admin_headers):
        response = await client.post(
            f"{API}/kyc/me", json={"documentType": "passport", "country": "US"}, headers=user_headers
        )
        record_id = response.json()["id"]
        await client.put(
            f"{API}/kyc/admin/records/{user.id}/status", json={"status": "verified"}, headers=admin_headers
        )

        response = await client.get(f"{API}/admin/audit-logs", params={"target_id": record_id}, headers=admin_headers)

        assert response.status_code == 200
        actions = sorted(entry["action"] for entry in response.json())
        assert actions == ["kyc.admin-override", "kyc.user-submission"]
