import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.core.exceptions import (
    AlreadyReviewedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.models.transaction import Transaction
from app.services.payments import PaymentApprovalWorkflow

# Test data
BASIC_PACKAGE = {"package": "Basic", "amount_usd": 2.5, "coins": 30, "screenshot": "data:image/png;base64,AAAA"}


async def _submit(client: AsyncClient, headers: dict, payload: dict = BASIC_PACKAGE):
    return await client.post("/payment-requests/", json=payload, headers=headers)


@pytest.mark.asyncio
async def test_submit_payment_request(client: AsyncClient, auth_headers: dict):
    """Test a user can submit a top-up request."""
    response = await _submit(client, auth_headers)

    assert response.status_code == 201
    request_id = response.json()["id"]

    listing = await client.get("/payment-requests/", headers=auth_headers)
    assert listing.status_code == 200
    data = listing.json()
    assert len(data) == 1
    assert data[0]["id"] == request_id
    assert data[0]["status"] == "pending"
    assert data[0]["reviewed_at"] is None
    assert "screenshot" not in data[0]


@pytest.mark.asyncio
async def test_second_pending_request_is_rejected(client: AsyncClient, auth_headers: dict):
    await _submit(client, auth_headers)

    response = await _submit(client, auth_headers, {**BASIC_PACKAGE, "package": "Pro"})

    assert response.status_code == 409
    assert "pending" in response.json()["detail"].lower()


@pytest.mark.asyncio
async def test_submit_validation(client: AsyncClient, auth_headers: dict):
    """Test missing or non-positive fields fail validation."""
    for payload in [
        {**BASIC_PACKAGE, "package": "  "},
        {**BASIC_PACKAGE, "coins": 0},
        {**BASIC_PACKAGE, "amount_usd": -1},
        {"package": "Basic"},
    ]:
        response = await _submit(client, auth_headers, payload)
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_submit_requires_auth(client: AsyncClient):
    response = await client.post("/payment-requests/", json=BASIC_PACKAGE)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_approve_credits_coins_once(
    client: AsyncClient, auth_headers: dict, admin_headers: dict
):
    """Submit, approve, then a second review attempt is a conflict."""
    request_id = (await _submit(client, auth_headers)).json()["id"]

    response = await client.post(
        f"/admin/payment-requests/{request_id}/approve", headers=admin_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "approved"
    assert data["reviewed_at"] is not None

    me = (await client.get("/me", headers=auth_headers)).json()
    assert me["coins"] == 33

    transactions = (await client.get("/transactions/", headers=auth_headers)).json()
    assert transactions[0]["type"] == "topup"
    assert transactions[0]["amount"] == 30
    assert transactions[0]["description"] == "Payment approved: Basic (+30 coins)"

    again = await client.post(
        f"/admin/payment-requests/{request_id}/approve", headers=admin_headers
    )
    assert again.status_code == 409
    reject = await client.post(
        f"/admin/payment-requests/{request_id}/reject", headers=admin_headers
    )
    assert reject.status_code == 409

    me = (await client.get("/me", headers=auth_headers)).json()
    assert me["coins"] == 33


@pytest.mark.asyncio
async def test_reject_has_no_ledger_effect(
    client: AsyncClient, auth_headers: dict, admin_headers: dict
):
    request_id = (await _submit(client, auth_headers)).json()["id"]

    response = await client.post(
        f"/admin/payment-requests/{request_id}/reject", headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    me = (await client.get("/me", headers=auth_headers)).json()
    assert me["coins"] == 3
    transactions = (await client.get("/transactions/", headers=auth_headers)).json()
    assert [item["type"] for item in transactions] == ["credit"]


@pytest.mark.asyncio
async def test_new_request_allowed_after_review(
    client: AsyncClient, auth_headers: dict, admin_headers: dict
):
    request_id = (await _submit(client, auth_headers)).json()["id"]
    await client.post(f"/admin/payment-requests/{request_id}/reject", headers=admin_headers)

    response = await _submit(client, auth_headers)

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_review_unknown_request(client: AsyncClient, admin_headers: dict):
    response = await client.post("/admin/payment-requests/9999/approve", headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_review_requires_admin_key(client: AsyncClient, auth_headers: dict):
    request_id = (await _submit(client, auth_headers)).json()["id"]

    response = await client.post(
        f"/admin/payment-requests/{request_id}/approve",
        headers={**auth_headers, "X-Admin-Key": "wrong"},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_listing_shows_pending_first(
    client: AsyncClient, auth_headers: dict, admin_headers: dict, create_user, db_session
):
    """Test the operator queue lists pending requests before reviewed ones."""
    first_id = (await _submit(client, auth_headers)).json()["id"]
    await client.post(f"/admin/payment-requests/{first_id}/approve", headers=admin_headers)

    other = await create_user(coins=0)
    workflow = PaymentApprovalWorkflow(db_session)
    pending = await workflow.submit(other.id, "Pro", 5.0, 70)

    response = await client.get("/admin/payment-requests", headers=admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data] == [pending.id, first_id]
    assert data[0]["username"] == other.username
    assert data[1]["screenshot"] == BASIC_PACKAGE["screenshot"]


# ===== Workflow-level tests =====

@pytest.mark.asyncio
async def test_workflow_submit_errors(db_session, create_user):
    workflow = PaymentApprovalWorkflow(db_session)

    with pytest.raises(ValidationError):
        await workflow.submit(1, "", 1.0, 10)
    with pytest.raises(NotFoundError):
        await workflow.submit(999999, "Basic", 1.0, 10)

    user = await create_user()
    await workflow.submit(user.id, "Basic", 1.0, 10)
    with pytest.raises(ConflictError):
        await workflow.submit(user.id, "Basic", 1.0, 10)


@pytest.mark.asyncio
async def test_workflow_approve_is_exactly_once(
    TestSessionLocal, create_user, ledger_state
):
    user = await create_user(coins=2)
    async with TestSessionLocal() as session:
        request = await PaymentApprovalWorkflow(session).submit(user.id, "Basic", 1.0, 10)

    async with TestSessionLocal() as session:
        approved = await PaymentApprovalWorkflow(session).approve(request.id)
    assert approved.status == "approved"

    async with TestSessionLocal() as session:
        with pytest.raises(AlreadyReviewedError):
            await PaymentApprovalWorkflow(session).approve(request.id)
        with pytest.raises(AlreadyReviewedError):
            await PaymentApprovalWorkflow(session).reject(request.id)

    coins, total, count = await ledger_state(user.id)
    assert coins == total == 12
    assert count == 2

    async with TestSessionLocal() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.user_id == user.id, Transaction.type == "topup")
        )
        assert len(result.scalars().all()) == 1
