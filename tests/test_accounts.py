"""
Tests for account management endpoints.

These tests verify:
  - Members can open, list, and view their own accounts
  - Members CANNOT access another user's accounts (403)
  - New accounts start with zero ledger and available balances
  - Invalid account types and currency codes are rejected
  - Only empty accounts can be closed, and closed accounts stay closed
  - Admins can read any balance and change account status
"""

import uuid


# ---------------------------------------------------------------------------
# Member: Account Opening
# ---------------------------------------------------------------------------

class TestAccountCreation:
    """Tests for POST /accounts."""

    async def test_create_checking_account(self, authenticated_client, member_id):
        """Members can open a checking account."""
        response = await authenticated_client.post(
            "/accounts",
            json={"account_type": "checking"},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["account_type"] == "checking"
        assert data["owner_id"] == str(member_id)
        assert data["balance_cents"] == 0
        assert data["available_balance_cents"] == 0
        assert data["currency"] == "USD"
        assert data["status"] == "active"
        assert len(data["account_number"]) == 10

    async def test_create_savings_account(self, authenticated_client):
        """Members can open a savings account."""
        response = await authenticated_client.post(
            "/accounts",
            json={"account_type": "savings"},
        )
        assert response.status_code == 201
        assert response.json()["account_type"] == "savings"

    async def test_create_default_checking(self, authenticated_client):
        """Default account type should be 'checking' when not specified."""
        response = await authenticated_client.post("/accounts", json={})
        assert response.status_code == 201
        assert response.json()["account_type"] == "checking"

    async def test_create_account_in_other_currency(self, authenticated_client):
        response = await authenticated_client.post("/accounts", json={"currency": "EUR"})
        assert response.status_code == 201
        assert response.json()["currency"] == "EUR"

    async def test_create_invalid_account_type(self, authenticated_client):
        """Invalid account types should be rejected (422)."""
        response = await authenticated_client.post(
            "/accounts",
            json={"account_type": "investment"},
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "validation_error"

    async def test_create_invalid_currency(self, authenticated_client):
        response = await authenticated_client.post("/accounts", json={"currency": "dollars"})
        assert response.status_code == 422

    async def test_account_numbers_are_unique(self, authenticated_client):
        numbers = set()
        for _ in range(5):
            response = await authenticated_client.post("/accounts", json={})
            numbers.add(response.json()["account_number"])
        assert len(numbers) == 5

    async def test_new_account_balance_is_zero(self, authenticated_client):
        """A newly opened account must have a zero balance that matches its history."""
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]

        balance_response = await authenticated_client.get(
            f"/accounts/{account_id}/balance"
        )
        assert balance_response.status_code == 200
        data = balance_response.json()
        assert data["balance_cents"] == 0
        assert data["available_balance_cents"] == 0
        assert data["held_cents"] == 0
        assert data["computed_balance_cents"] == 0
        assert data["match"] is True

    async def test_unauthenticated_cannot_open_account(self, client):
        response = await client.post("/accounts", json={})
        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Member: Account Retrieval
# ---------------------------------------------------------------------------

class TestAccountRetrieval:
    """Tests for GET /accounts and GET /accounts/{id}."""

    async def test_list_accounts_empty(self, authenticated_client):
        """A new user should have no accounts."""
        response = await authenticated_client.get("/accounts")
        assert response.status_code == 200
        assert response.json() == []

    async def test_list_multiple_accounts(self, authenticated_client):
        await authenticated_client.post("/accounts", json={"account_type": "checking"})
        await authenticated_client.post("/accounts", json={"account_type": "savings"})

        response = await authenticated_client.get("/accounts")
        assert response.status_code == 200
        assert len(response.json()) == 2

    async def test_get_account_by_id(self, authenticated_client):
        """A member can get their own account by ID."""
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]

        response = await authenticated_client.get(f"/accounts/{account_id}")
        assert response.status_code == 200
        assert response.json()["id"] == account_id

    async def test_get_nonexistent_account(self, authenticated_client):
        """Requesting a non-existent account ID should return 404."""
        response = await authenticated_client.get(f"/accounts/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_type"] == "account_not_found"


# ---------------------------------------------------------------------------
# Member: Ownership Enforcement (Cross-User Access Denied)
# ---------------------------------------------------------------------------

class TestOwnershipEnforcement:
    """Tests that members cannot access other users' accounts."""

    async def test_cannot_view_other_users_account(
        self, authenticated_client, second_authenticated_client
    ):
        """User B should NOT be able to view User A's account (403)."""
        create_response = await authenticated_client.post("/accounts", json={})
        account_a_id = create_response.json()["id"]

        response = await second_authenticated_client.get(f"/accounts/{account_a_id}")
        assert response.status_code == 403
        assert response.json()["error_type"] == "unauthorized_access"

    async def test_cannot_view_other_users_balance(
        self, authenticated_client, second_authenticated_client
    ):
        create_response = await authenticated_client.post("/accounts", json={})
        account_a_id = create_response.json()["id"]

        response = await second_authenticated_client.get(f"/accounts/{account_a_id}/balance")
        assert response.status_code == 403

    async def test_list_only_shows_own_accounts(
        self, authenticated_client, second_authenticated_client
    ):
        """GET /accounts should only return the current user's accounts."""
        await authenticated_client.post("/accounts", json={})
        await authenticated_client.post("/accounts", json={})
        await second_authenticated_client.post("/accounts", json={})

        response_a = await authenticated_client.get("/accounts")
        assert len(response_a.json()) == 2

        response_b = await second_authenticated_client.get("/accounts")
        assert len(response_b.json()) == 1


# ---------------------------------------------------------------------------
# Member: Closing Accounts
# ---------------------------------------------------------------------------

class TestAccountClosing:
    """Tests for POST /accounts/{id}/close."""

    async def test_close_empty_account(self, authenticated_client):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]

        response = await authenticated_client.post(f"/accounts/{account_id}/close")
        assert response.status_code == 200
        assert response.json()["status"] == "closed"

    async def test_cannot_close_account_with_funds(self, authenticated_client, open_account):
        account = await open_account(authenticated_client, 500)

        response = await authenticated_client.post(f"/accounts/{account['id']}/close")
        assert response.status_code == 422
        assert response.json()["error_type"] == "account_not_empty"

    async def test_cannot_close_twice(self, authenticated_client):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]
        await authenticated_client.post(f"/accounts/{account_id}/close")

        response = await authenticated_client.post(f"/accounts/{account_id}/close")
        assert response.status_code == 422
        assert response.json()["error_type"] == "account_closed"

    async def test_closed_account_rejects_deposits(self, authenticated_client):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]
        await authenticated_client.post(f"/accounts/{account_id}/close")

        response = await authenticated_client.post(
            f"/accounts/{account_id}/transactions",
            json={"type": "deposit", "amount_cents": 100},
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "account_inactive"

    async def test_cannot_close_other_users_account(
        self, authenticated_client, second_authenticated_client
    ):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]

        response = await second_authenticated_client.post(f"/accounts/{account_id}/close")
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Admin: Balances and Account Status
# ---------------------------------------------------------------------------

class TestAdminAccountOperations:
    """Tests for the /admin/accounts endpoints."""

    async def test_admin_can_view_any_balance(
        self, admin_client, authenticated_client, open_account
    ):
        """Admin should be able to check any account's balance."""
        account = await open_account(authenticated_client, 2500)

        response = await admin_client.get(f"/admin/accounts/{account['id']}/balance")
        assert response.status_code == 200
        data = response.json()
        assert data["balance_cents"] == 2500
        assert data["match"] is True

    async def test_admin_balance_for_unknown_account(self, admin_client):
        response = await admin_client.get(f"/admin/accounts/{uuid.uuid4()}/balance")
        assert response.status_code == 404

    async def test_admin_can_suspend_and_reactivate(
        self, admin_client, authenticated_client, open_account
    ):
        account = await open_account(authenticated_client, 1000)

        response = await admin_client.post(
            f"/admin/accounts/{account['id']}/status", json={"status": "suspended"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "suspended"

        # Suspended accounts can't move money
        withdrawal = await authenticated_client.post(
            f"/accounts/{account['id']}/transactions",
            json={"type": "withdrawal", "amount_cents": 100},
        )
        assert withdrawal.status_code == 422
        assert withdrawal.json()["error_type"] == "account_inactive"

        response = await admin_client.post(
            f"/admin/accounts/{account['id']}/status", json={"status": "active"}
        )
        assert response.json()["status"] == "active"

    async def test_closed_account_cannot_be_reopened(self, admin_client, authenticated_client):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]
        await authenticated_client.post(f"/accounts/{account_id}/close")

        response = await admin_client.post(
            f"/admin/accounts/{account_id}/status", json={"status": "active"}
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "invalid_status_transition"

    async def test_admin_cannot_set_closed_status_directly(self, admin_client, authenticated_client):
        create_response = await authenticated_client.post("/accounts", json={})
        account_id = create_response.json()["id"]

        response = await admin_client.post(
            f"/admin/accounts/{account_id}/status", json={"status": "closed"}
        )
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Member: Blocked from Admin Endpoints
# ---------------------------------------------------------------------------

class TestMemberBlockedFromAdminEndpoints:
    """Tests that regular members cannot access admin endpoints."""

    async def test_member_cannot_view_admin_balance(self, authenticated_client):
        response = await authenticated_client.get(f"/admin/accounts/{uuid.uuid4()}/balance")
        assert response.status_code == 403
        assert "Admin access required" in response.json()["detail"]

    async def test_member_cannot_change_status(self, authenticated_client):
        response = await authenticated_client.post(
            f"/admin/accounts/{uuid.uuid4()}/status", json={"status": "suspended"}
        )
        assert response.status_code == 403

    async def test_unauthenticated_cannot_access_admin_endpoints(self, client):
        response = await client.get(f"/admin/accounts/{uuid.uuid4()}/balance")
        assert response.status_code == 401
