"""API tests over the ASGI app: auth, error bodies and admin workflows."""
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.auth.context import Role
from agency_billing.config import Settings
from utils.factories import (
    INVALID_ACCOUNT_NUMBER,
    VALID_ACCOUNT_NUMBER,
    AdjustmentFactory,
    MandateFactory,
    build_galicia_response,
    create_billed_tenant,
    utc,
)

pytestmark = pytest.mark.integration

MANDATE_URL = "/api/v1/subscription/payment-methods/direct-debit"
BATCHES_URL = "/api/v1/admin/collections/direct-debit/batches"
ADJUSTMENTS_URL = "/api/v1/admin/tenants/42/adjustments"


async def _seed_billed_tenant(db_session: AsyncSession, settings: Settings) -> dict:
    """Commit a tenant with one materialized cycle so the app's own sessions see it."""
    billed = await create_billed_tenant(db_session, settings, 42, utc(2024, 4, 10, 3))
    ids = {"charge_id": str(billed.charge.id), "cycle_id": str(billed.cycle.id)}
    await db_session.commit()
    return ids


def _first_reference(file_content: bytes) -> str:
    detail = next(line for line in file_content.decode("utf-8").splitlines() if line.startswith("D|"))
    return detail.split("|")[2]


@pytest.mark.asyncio
async def test_health_endpoints(async_client: AsyncClient) -> None:
    health = await async_client.get("/health")
    ready = await async_client.get("/health/ready")
    root = await async_client.get("/")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert ready.status_code == 200
    assert ready.json()["checks"]["database"] == "connected"
    assert root.json()["service"] == "Agency Billing"


@pytest.mark.asyncio
async def test_authentication_and_roles(async_client: AsyncClient, auth_headers) -> None:
    """Test that missing tokens answer 401 and insufficient roles answer 403."""
    assert (await async_client.get("/api/v1/subscription/overview")).status_code == 401
    bad = await async_client.get("/api/v1/subscription/overview", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401

    viewer = auth_headers(Role.VIEWER)
    assert (await async_client.get("/api/v1/subscription/overview", headers=viewer)).status_code == 200
    assert (await async_client.post(MANDATE_URL, json=MandateFactory.create(), headers=viewer)).status_code == 403
    assert (await async_client.get(BATCHES_URL, headers=auth_headers(Role.OWNER))).status_code == 403


@pytest.mark.asyncio
async def test_submit_mandate(async_client: AsyncClient, auth_headers) -> None:
    """Test that the mandate response only ever shows the masked account."""
    response = await async_client.post(
        MANDATE_URL, json=MandateFactory.create(), headers=auth_headers(Role.BILLING_MANAGER)
    )

    assert response.status_code == 201
    body = response.json()
    assert body["created"] is True
    assert body["payment_method"]["method_type"] == "DIRECT_DEBIT"
    assert body["mandate"]["status"] == "PENDING"
    assert body["mandate"]["account_masked"] == "****5201"
    assert VALID_ACCOUNT_NUMBER not in response.text
    assert "account_last4" not in body["mandate"]

    overview = await async_client.get("/api/v1/subscription/overview", headers=auth_headers(Role.VIEWER))
    assert overview.json()["method_type"] == "DIRECT_DEBIT"
    assert overview.json()["mandate_status"] == "PENDING"


@pytest.mark.asyncio
async def test_submit_mandate_errors(async_client: AsyncClient, auth_headers) -> None:
    headers = auth_headers(Role.OWNER)

    invalid = await async_client.post(
        MANDATE_URL, json=MandateFactory.create({"account_number": INVALID_ACCOUNT_NUMBER}), headers=headers
    )
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "ValidationError"
    assert invalid.json()["remediation"]

    no_consent = await async_client.post(
        MANDATE_URL, json=MandateFactory.create({"consent_accepted": False}), headers=headers
    )
    assert no_consent.status_code == 400

    missing = await async_client.post(MANDATE_URL, json={"holder_name": "Ana"}, headers=headers)
    assert missing.status_code == 422
    assert {d["field"] for d in missing.json()["details"]} >= {"body.tax_id", "body.account_number"}


@pytest.mark.asyncio
async def test_admin_mandate_transition(async_client: AsyncClient, auth_headers) -> None:
    await async_client.post(MANDATE_URL, json=MandateFactory.create(), headers=auth_headers(Role.OWNER))
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)

    response = await async_client.patch(
        MANDATE_URL, json={"tenant_id": 42, "status": "ACTIVE", "bank_reference": "MAND-9"}, headers=admin
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ACTIVE"
    assert response.json()["bank_reference"] == "MAND-9"

    unknown = await async_client.patch(MANDATE_URL, json={"tenant_id": 7, "status": "ACTIVE"}, headers=admin)
    assert unknown.status_code == 404
    missing = await async_client.patch(MANDATE_URL, json={"status": "ACTIVE"}, headers=admin)
    assert missing.status_code == 400
    not_admin = await async_client.patch(
        MANDATE_URL, json={"tenant_id": 42, "status": "ACTIVE"}, headers=auth_headers(Role.OWNER)
    )
    assert not_admin.status_code == 403


@pytest.mark.asyncio
async def test_batch_workflow(
    async_client: AsyncClient, auth_headers, db_session: AsyncSession, settings: Settings
) -> None:
    """Test presenting a batch, downloading its file and importing the bank's answer."""
    await _seed_billed_tenant(db_session, settings)
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)

    created = await async_client.post(BATCHES_URL, json={"business_date": "2024-04-10"}, headers=admin)
    assert created.status_code == 201
    batch = created.json()
    assert batch["status"] == "READY"
    assert batch["record_count"] == 1

    downloaded = await async_client.get(f"{BATCHES_URL}/{batch['id']}/file", headers=admin)
    assert downloaded.status_code == 200
    assert "attachment" in downloaded.headers["content-disposition"]
    reference = _first_reference(downloaded.content)

    content = build_galicia_response([(reference, "00", Decimal("108900.00"))], date(2024, 4, 11))
    imported = await async_client.post(
        f"{BATCHES_URL}/{batch['id']}/import-response",
        files={"file": ("resp_20240411.txt", content, "text/plain")},
        headers=admin,
    )
    assert imported.status_code == 200
    assert imported.json()["paid"] == 1
    assert imported.json()["duplicate"] is False

    again = await async_client.post(
        f"{BATCHES_URL}/{batch['id']}/import-response",
        files={"file": ("resp_20240411.txt", content, "text/plain")},
        headers=admin,
    )
    assert again.json()["duplicate"] is True

    outbound = (await async_client.get(BATCHES_URL, params={"direction": "OUTBOUND"}, headers=admin)).json()
    assert [b["status"] for b in outbound] == ["RECONCILED"]

    # Nothing left to present for the day
    empty = await async_client.post(BATCHES_URL, json={"business_date": "2024-04-10"}, headers=admin)
    assert empty.json()["status"] == "EMPTY"
    conflict = await async_client.post(
        f"{BATCHES_URL}/{empty.json()['id']}/import-response",
        files={"file": ("resp.txt", content, "text/plain")},
        headers=admin,
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "Conflict"


@pytest.mark.asyncio
async def test_import_with_bad_totals_is_recorded(
    async_client: AsyncClient, auth_headers, db_session: AsyncSession, settings: Settings
) -> None:
    """Test that a mismatching file answers 422 and stays recorded as REJECTED."""
    await _seed_billed_tenant(db_session, settings)
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)
    batch = (await async_client.post(BATCHES_URL, json={"business_date": "2024-04-10"}, headers=admin)).json()
    reference = _first_reference((await async_client.get(f"{BATCHES_URL}/{batch['id']}/file", headers=admin)).content)

    content = build_galicia_response(
        [(reference, "00", Decimal("108900.00"))], date(2024, 4, 11), declared_count=3, declared_amount=Decimal("5")
    )
    response = await async_client.post(
        f"{BATCHES_URL}/{batch['id']}/import-response",
        files={"file": ("resp.txt", content, "text/plain")},
        headers=admin,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "ControlTotalsMismatch"
    assert len(response.json()["details"]) == 2

    inbound = (await async_client.get(BATCHES_URL, params={"direction": "INBOUND"}, headers=admin)).json()
    assert [b["status"] for b in inbound] == ["REJECTED"]

    overview = (await async_client.get("/api/v1/subscription/overview", headers=auth_headers(Role.OWNER))).json()
    assert overview["current_charge"]["status"] == "PRESENTED"


@pytest.mark.asyncio
async def test_import_of_non_utf8_file_is_a_bad_request(
    async_client: AsyncClient, auth_headers, db_session: AsyncSession, settings: Settings
) -> None:
    await _seed_billed_tenant(db_session, settings)
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)
    batch = (await async_client.post(BATCHES_URL, json={"business_date": "2024-04-10"}, headers=admin)).json()
    content = (
        b"H|GALICIA_PD_RESP|v1.0|0001|PD|20240411|1|10.00|\n"
        b"D|1|AT-1|51|SIN FONDOS \xd1|10.00|20240411120000|T|O\n"
        b"T|1|10.00|\n"
    )

    response = await async_client.post(
        f"{BATCHES_URL}/{batch['id']}/import-response",
        files={"file": ("resp.txt", content, "text/plain")},
        headers=admin,
    )

    assert response.status_code == 400
    assert "not valid UTF-8" in response.json()["message"]


@pytest.mark.asyncio
async def test_unknown_batch(async_client: AsyncClient, auth_headers) -> None:
    response = await async_client.get(
        f"{BATCHES_URL}/{uuid4()}/file", headers=auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)
    )

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


@pytest.mark.asyncio
async def test_adjustment_endpoints(async_client: AsyncClient, auth_headers) -> None:
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)

    created = await async_client.post(ADJUSTMENTS_URL, json=AdjustmentFactory.create(), headers=admin)
    assert created.status_code == 201
    adjustment_id = created.json()["id"]
    assert created.json()["tenant_id"] == 42

    updated = await async_client.patch(f"{ADJUSTMENTS_URL}/{adjustment_id}", json={"active": False}, headers=admin)
    assert updated.status_code == 200
    assert updated.json()["active"] is False

    too_high = await async_client.patch(f"{ADJUSTMENTS_URL}/{adjustment_id}", json={"value": "150"}, headers=admin)
    assert too_high.status_code == 400

    invalid = await async_client.post(ADJUSTMENTS_URL, json=AdjustmentFactory.create({"value": "150"}), headers=admin)
    assert invalid.status_code == 422

    listed = await async_client.get(ADJUSTMENTS_URL, headers=admin)
    assert [a["id"] for a in listed.json()] == [adjustment_id]

    deleted = await async_client.delete(f"{ADJUSTMENTS_URL}/{adjustment_id}", headers=admin)
    assert deleted.status_code == 204
    assert (await async_client.get(ADJUSTMENTS_URL, headers=admin)).json() == []

    forbidden = await async_client.get(ADJUSTMENTS_URL, headers=auth_headers(Role.OWNER))
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_fallback_endpoints(
    async_client: AsyncClient, auth_headers, db_session: AsyncSession, settings: Settings
) -> None:
    """Test creating, re-requesting and canceling a fallback intent over HTTP."""
    ids = await _seed_billed_tenant(db_session, settings)
    admin = auth_headers(Role.PLATFORM_ADMIN, tenant_id=None)
    url = f"/api/v1/admin/collections/fallback/{ids['charge_id']}"

    created = await async_client.post(url, json={"provider": "CIG_QR", "idempotency_key": "req-1"}, headers=admin)
    assert created.status_code == 201
    intent = created.json()
    assert intent["provider"] == "CIG_QR"
    assert intent["status"] == "PENDING"
    assert intent["qr_payload"]

    again = await async_client.post(url, json={"idempotency_key": "req-1"}, headers=admin)
    assert again.status_code == 200
    assert again.json()["id"] == intent["id"]

    synced = await async_client.post(f"/api/v1/admin/collections/fallback/intents/{intent['id']}/sync", headers=admin)
    assert synced.status_code == 200
    assert synced.json()["status"] == "PENDING"

    canceled = await async_client.post(
        f"/api/v1/admin/collections/fallback/intents/{intent['id']}/cancel", headers=admin
    )
    assert canceled.json()["status"] == "CANCELED"

    missing = await async_client.post(f"/api/v1/admin/collections/fallback/{uuid4()}", json={}, headers=admin)
    assert missing.status_code == 404
