from datetime import timedelta

import jwt
import pytest

from config import Settings, get_settings
from database import utcnow
from main import app

from conftest import OTHER

MINE = {"x-user-id": "user-1"}
THEIRS = {"x-user-id": OTHER}


def create_account(client, name, balance, headers=MINE):
    response = client.post(
        "/api/accounts",
        json={"name": name, "type": "BANK", "balance": balance},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["account"]["id"]


def account_balance(client, account_id, headers=MINE):
    response = client.get(f"/api/accounts/{account_id}", headers=headers)
    assert response.status_code == 200
    return response.json()["account"]["balance"]


def transfer_body(amount, from_id, to_id):
    return {
        "description": "Move to savings",
        "amount": amount,
        "type": "TRANSFER",
        "date": "2026-10-01T12:00:00",
        "from_account_id": from_id,
        "to_account_id": to_id,
    }


class TestAccounts:
    def test_duplicate_name_conflicts(self, client):
        create_account(client, "Checking", 10)
        response = client.post(
            "/api/accounts", json={"name": "Checking", "type": "CASH"}, headers=MINE
        )
        assert response.status_code == 409

    def test_same_name_allowed_for_another_owner(self, client):
        create_account(client, "Checking", 10)
        create_account(client, "Checking", 10, headers=THEIRS)

    def test_balance_correction_bypasses_ledger(self, client):
        a = create_account(client, "Cash", 100)
        response = client.put(f"/api/accounts/{a}", json={"balance": 42.5}, headers=MINE)
        assert response.status_code == 200
        assert account_balance(client, a) == 42.5

    def test_referenced_account_cannot_be_deleted(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        client.post("/api/transactions", json=transfer_body(10, a, b), headers=MINE)

        assert client.delete(f"/api/accounts/{a}", headers=MINE).status_code == 409

    def test_accounts_are_scoped_by_owner(self, client):
        a = create_account(client, "A", 1000)
        assert client.get(f"/api/accounts/{a}", headers=THEIRS).status_code == 404
        assert client.get("/api/accounts", headers=THEIRS).json() == {"accounts": []}


class TestTransactions:
    def test_create_and_delete_scenario(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)

        response = client.post("/api/transactions", json=transfer_body(200, a, b), headers=MINE)
        assert response.status_code == 200
        transaction = response.json()["transaction"]
        assert transaction["amount"] == 200
        assert account_balance(client, a) == 800
        assert account_balance(client, b) == 200

        response = client.delete(f"/api/transactions/{transaction['id']}", headers=MINE)
        assert response.status_code == 200
        assert account_balance(client, a) == 1000
        assert account_balance(client, b) == 0

    def test_missing_fields_are_bad_request(self, client):
        response = client.post("/api/transactions", json={"amount": 5}, headers=MINE)
        assert response.status_code == 400
        assert "description" in response.json()["error"]

    def test_non_positive_amount_is_bad_request(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        response = client.post("/api/transactions", json=transfer_body(0, a, b), headers=MINE)
        assert response.status_code == 400

    def test_transfer_without_destination_is_bad_request(self, client):
        a = create_account(client, "A", 1000)
        response = client.post(
            "/api/transactions", json=transfer_body(10, a, None), headers=MINE
        )
        assert response.status_code == 400
        assert account_balance(client, a) == 1000

    def test_update_by_other_owner_is_not_found(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        created = client.post(
            "/api/transactions", json=transfer_body(200, a, b), headers=MINE
        ).json()["transaction"]

        response = client.put(
            f"/api/transactions/{created['id']}",
            json=transfer_body(50, a, b),
            headers=THEIRS,
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Transaction not found"}
        assert account_balance(client, a) == 800

    def test_update_moves_balances(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        created = client.post(
            "/api/transactions", json=transfer_body(200, a, b), headers=MINE
        ).json()["transaction"]

        response = client.put(
            f"/api/transactions/{created['id']}",
            json=transfer_body(300, b, a),
            headers=MINE,
        )
        assert response.status_code == 200
        assert account_balance(client, a) == 1300
        assert account_balance(client, b) == -300

    def test_list_filters_by_type(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        client.post("/api/transactions", json=transfer_body(5, a, b), headers=MINE)
        client.post(
            "/api/transactions",
            json={
                "description": "Salary",
                "amount": 900,
                "type": "INCOME",
                "date": "2026-10-02T00:00:00",
                "to_account_id": a,
            },
            headers=MINE,
        )

        response = client.get("/api/transactions", params={"type": "INCOME"}, headers=MINE)
        found = response.json()["transactions"]
        assert [t["description"] for t in found] == ["Salary"]


class TestScheduledTransactions:
    def _create(self, client, a, b):
        response = client.post(
            "/api/scheduled-transactions",
            json={
                "description": "Monthly savings",
                "amount": 50,
                "from_account_id": a,
                "to_account_id": b,
                "scheduled_date": "2026-10-25T00:00:00",
            },
            headers=MINE,
        )
        assert response.status_code == 200, response.text
        return response.json()["scheduled_transaction"]

    def test_execute_and_undo_scenario(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        record = self._create(client, a, b)
        assert account_balance(client, a) == 1000
        url = f"/api/scheduled-transactions/{record['id']}"

        response = client.put(url, json={"action": "execute"}, headers=MINE)
        assert response.status_code == 200
        assert response.json()["scheduled_transaction"]["is_executed"] is True
        assert account_balance(client, a) == 950
        assert account_balance(client, b) == 50

        response = client.put(url, json={"action": "undo"}, headers=MINE)
        assert response.status_code == 200
        assert response.json()["scheduled_transaction"]["is_executed"] is False
        assert account_balance(client, a) == 1000
        assert account_balance(client, b) == 0

    def test_double_execute_conflicts(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        url = f"/api/scheduled-transactions/{self._create(client, a, b)['id']}"

        client.put(url, json={"action": "execute"}, headers=MINE)
        response = client.put(url, json={"action": "execute"}, headers=MINE)
        assert response.status_code == 409
        assert account_balance(client, a) == 950

    def test_bad_action_is_rejected(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        url = f"/api/scheduled-transactions/{self._create(client, a, b)['id']}"

        response = client.put(url, json={"action": "replay"}, headers=MINE)
        assert response.status_code == 400

    def test_unknown_record_is_not_found(self, client):
        response = client.put(
            "/api/scheduled-transactions/missing", json={"action": "execute"}, headers=MINE
        )
        assert response.status_code == 404

    def test_count_only_pending(self, client):
        a = create_account(client, "A", 1000)
        b = create_account(client, "B", 0)
        first = self._create(client, a, b)
        self._create(client, a, b)
        client.put(
            f"/api/scheduled-transactions/{first['id']}",
            json={"action": "execute"},
            headers=MINE,
        )

        response = client.get("/api/scheduled-transactions/count", headers=MINE)
        assert response.json() == {"count": 1}


class TestBillsAndNotifications:
    def _bill(self, client, due):
        response = client.post(
            "/api/bills",
            json={"name": "Rent", "amount": 384000, "due_date": due.isoformat()},
            headers=MINE,
        )
        assert response.status_code == 200, response.text
        return response.json()["bill"]

    def test_bill_with_foreign_account_is_rejected(self, client):
        theirs = create_account(client, "Theirs", 0, headers=THEIRS)
        response = client.post(
            "/api/bills",
            json={
                "name": "Power",
                "amount": 10,
                "due_date": "2026-11-01T00:00:00",
                "account_id": theirs,
            },
            headers=MINE,
        )
        assert response.status_code == 400

    def test_generate_dedups_and_respects_paid(self, client):
        bill = self._bill(client, utcnow() + timedelta(days=1))

        response = client.post("/api/notifications/generate", headers=MINE)
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["bill_notifications"] == 1
        assert result["total_generated"] == 1
        assert result["cleaned_up_count"] == 0

        again = client.post("/api/notifications/generate", headers=MINE).json()["result"]
        assert again["total_generated"] == 0

        paid = client.put(f"/api/bills/{bill['id']}", json={"is_paid": True}, headers=MINE)
        assert paid.json()["bill"]["is_paid"] is True
        assert client.get("/api/bills/count", headers=MINE).json() == {"count": 0}

        notes = client.get("/api/notifications", headers=MINE).json()["notifications"]
        assert len(notes) == 1
        assert notes[0]["priority"] == "MEDIUM"
        assert notes[0]["related_kind"] == "BILL"
        assert notes[0]["related_id"] == bill["id"]

    def test_mark_read_updates_unread_count(self, client):
        created = client.post(
            "/api/notifications",
            json={"title": "Hello", "message": "Welcome", "type": "GENERAL"},
            headers=MINE,
        ).json()["notification"]
        assert client.get("/api/notifications/count", headers=MINE).json() == {"count": 1}

        response = client.put(
            f"/api/notifications/{created['id']}", json={"is_read": True}, headers=MINE
        )
        assert response.json()["notification"]["is_read"] is True
        assert client.get("/api/notifications/count", headers=MINE).json() == {"count": 0}

    def test_notifications_are_scoped_by_owner(self, client):
        created = client.post(
            "/api/notifications",
            json={"title": "Hello", "message": "Welcome", "type": "GENERAL"},
            headers=MINE,
        ).json()["notification"]
        response = client.delete(f"/api/notifications/{created['id']}", headers=THEIRS)
        assert response.status_code == 404


class TestGoalsAndCategories:
    def _goal(self, client, name="Emergency Fund", headers=MINE, **extra):
        response = client.post(
            "/api/goals", json={"name": name, "target_amount": 10000, **extra}, headers=headers
        )
        assert response.status_code == 200, response.text
        return response.json()["goal"]

    def test_goal_defaults(self, client):
        goal = self._goal(client)
        assert goal["current_amount"] == 0
        assert goal["currency"] == "LKR"
        assert goal["deadline"] is None

    def test_goal_needs_positive_target(self, client):
        response = client.post(
            "/api/goals", json={"name": "Car", "target_amount": 0}, headers=MINE
        )
        assert response.status_code == 400

    def test_update_keeps_unsent_fields_and_clears_deadline(self, client):
        goal = self._goal(client, current_amount=2500, deadline="2027-01-01T00:00:00")

        response = client.put(
            f"/api/goals/{goal['id']}",
            json={"current_amount": 3000, "deadline": None},
            headers=MINE,
        )
        assert response.status_code == 200
        updated = response.json()["goal"]
        assert updated["current_amount"] == 3000
        assert updated["target_amount"] == 10000
        assert updated["name"] == "Emergency Fund"
        assert updated["deadline"] is None

    def test_goals_are_scoped_by_owner(self, client):
        goal = self._goal(client)
        url = f"/api/goals/{goal['id']}"
        assert client.put(url, json={"name": "Mine now"}, headers=THEIRS).status_code == 404
        assert client.delete(url, headers=THEIRS).status_code == 404
        assert client.get("/api/goals", headers=THEIRS).json() == {"goals": []}

        assert client.delete(url, headers=MINE).status_code == 200
        assert client.get("/api/goals", headers=MINE).json() == {"goals": []}

    def test_goals_account_setting(self, client):
        response = client.get("/api/goals/account", headers=MINE)
        assert response.json()["has_goals_account"] is False

        savings = create_account(client, "Savings", 500)
        response = client.put(
            "/api/goals/account", json={"account_id": savings}, headers=MINE
        )
        assert response.status_code == 200
        assert response.json()["has_goals_account"] is True
        assert response.json()["goals_account"]["id"] == savings

        assert client.delete(f"/api/accounts/{savings}", headers=MINE).status_code == 409

        cleared = client.put("/api/goals/account", json={"account_id": None}, headers=MINE)
        assert cleared.json()["has_goals_account"] is False

    def test_goals_account_must_be_owned(self, client):
        theirs = create_account(client, "Theirs", 0, headers=THEIRS)
        response = client.put(
            "/api/goals/account", json={"account_id": theirs}, headers=MINE
        )
        assert response.status_code == 404

    def test_categories_sorted_with_defaults(self, client):
        for name, kind in (("Salary", "INCOME"), ("Food & Dining", "EXPENSE")):
            response = client.post(
                "/api/categories", json={"name": name, "type": kind}, headers=MINE
            )
            assert response.status_code == 200, response.text

        categories = client.get("/api/categories", headers=MINE).json()["categories"]
        assert [c["name"] for c in categories] == ["Food & Dining", "Salary"]
        assert categories[0]["color"] == "#6b7280"
        assert categories[0]["icon"]
        assert client.get("/api/categories", headers=THEIRS).json() == {"categories": []}

    def test_duplicate_category_conflicts(self, client):
        body = {"name": "Rent", "type": "EXPENSE", "color": "#EF4444"}
        assert client.post("/api/categories", json=body, headers=MINE).status_code == 200
        assert client.post("/api/categories", json=body, headers=MINE).status_code == 409
        assert client.post("/api/categories", json=body, headers=THEIRS).status_code == 200

    def test_category_needs_type(self, client):
        response = client.post("/api/categories", json={"name": "Misc"}, headers=MINE)
        assert response.status_code == 400


class TestIdentity:
    @pytest.fixture
    def strict(self):
        app.dependency_overrides[get_settings] = lambda: Settings(allow_header_identity=False)
        yield
        app.dependency_overrides.pop(get_settings, None)

    def test_default_demo_user_without_header(self, client):
        create_account(client, "Demo", 5, headers={})
        response = client.get("/api/accounts", headers=MINE)
        assert [a["name"] for a in response.json()["accounts"]] == ["Demo"]

    def test_token_identity_when_headers_disabled(self, client, strict):
        assert client.get("/api/accounts").status_code == 401

        response = client.post(
            "/auth/register", json={"username": "alice", "password": "s3cret-pass"}
        )
        assert response.status_code == 200
        login = client.post(
            "/auth/login", json={"username": "alice", "password": "s3cret-pass"}
        )
        token = login.json()["access_token"]

        auth = {"Authorization": f"Bearer {token}"}
        response = client.post(
            "/api/accounts", json={"name": "Main", "type": "BANK"}, headers=auth
        )
        assert response.status_code == 200
        assert client.get("/api/accounts", headers=auth).json()["accounts"][0]["name"] == "Main"

    def test_wrong_password_is_unauthorized(self, client):
        client.post("/auth/register", json={"username": "bob", "password": "right-pass"})
        response = client.post(
            "/auth/login", json={"username": "bob", "password": "wrong-pass"}
        )
        assert response.status_code == 401

    def test_header_identity_is_off_unless_enabled(self):
        assert Settings.model_fields["allow_header_identity"].default is False

    def test_header_cannot_act_as_registered_user(self, client):
        response = client.post(
            "/auth/register", json={"username": "alice", "password": "s3cret-pass"}
        )
        token = response.json()["access_token"]
        alice = jwt.decode(token, options={"verify_signature": False})["sub"]
        auth = {"Authorization": f"Bearer {token}"}
        client.post(
            "/api/accounts", json={"name": "Private", "type": "BANK", "balance": 5000}, headers=auth
        )

        response = client.get("/api/accounts", headers={"x-user-id": alice})
        assert response.status_code == 401
        assert client.get("/api/accounts", headers=auth).status_code == 200
