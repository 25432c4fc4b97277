import json
import unittest
from datetime import date
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from finledger import main
from finledger.llm import ModelUnavailable
from finledger.rate_limiter import TokenBucketRateLimiter
from finledger.store import create_store_engine, init_db

STATEMENT_CSV = (
    b"Date,Narration,Withdrawal,Deposit\n"
    b"2024-05-01,SALARY ACME CORP,,85000\n"
    b"2024-05-03,INTEREST CREDIT,,412.50\n"
    b"2024-05-04,SWIGGY ORDER,640,\n"
)

EXTRACTED = json.dumps(
    {
        "transactions": [
            {"title": "Salary", "description": "SALARY ACME CORP", "reference": "TXN-001",
             "date": "2024-05-01", "type": "credit", "amount": 85000, "category": "Income"},
            {"title": "Interest", "description": "INTEREST CREDIT", "reference": "TXN-002",
             "date": "2024-05-03", "type": "credit", "amount": 412.5, "category": "Banking"},
            {"title": "Swiggy order", "description": "SWIGGY ORDER", "reference": "TXN-003",
             "date": "2024-05-04", "type": "debit", "amount": 640, "category": "Food & Drinks"},
        ]
    }
)


class FakeModel:
    def __init__(self, reply: str = EXTRACTED, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_store_engine("sqlite://")
        init_db(self.engine)
        engine_patch = mock.patch.object(main, "engine", self.engine)
        engine_patch.start()
        self.addCleanup(engine_patch.stop)
        self.addCleanup(self.engine.dispose)

        original_limiter = main.app.state.rate_limiter
        main.app.state.rate_limiter = TokenBucketRateLimiter(capacity=10_000, window_seconds=1.0)
        self.addCleanup(setattr, main.app.state, "rate_limiter", original_limiter)

        self.model = FakeModel()
        main.app.dependency_overrides[main.get_model] = lambda: self.model
        self.addCleanup(main.app.dependency_overrides.clear)

        self.client = TestClient(main.app)

    def create_user(self, user_id: str = "u1", username: str = "asha") -> dict:
        response = self.client.post(
            "/api/users",
            json={"id": user_id, "username": username, "email": f"{username}@example.com"},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def create_transaction(self, user_id: str = "u1", **fields) -> dict:
        form = {"amount": "100", "type": "debit"}
        form.update({key: str(value) for key, value in fields.items()})
        response = self.client.post(f"/api/users/{user_id}/transactions", data=form)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["transaction"]


class UserRouteTests(ApiTestCase):
    def test_create_then_fetch_round_trip(self) -> None:
        created = self.client.post(
            "/api/users",
            json={"id": "u1", "username": " asha ", "email": "asha@example.com", "phone": "+91 98765 43210"},
        )
        self.assertEqual(created.status_code, 200)

        fetched = self.client.get("/api/users/u1")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json(), created.json())
        self.assertEqual(fetched.json()["username"], "asha")

    def test_generated_id_when_missing(self) -> None:
        response = self.client.post("/api/users", json={"username": "ravi", "email": "ravi@example.com"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["id"]), 32)

    def test_validation_errors_name_the_field(self) -> None:
        missing = self.client.post("/api/users", json={"email": "a@example.com"})
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json(), {"success": False, "error": "username is required"})

        bad_email = self.client.post("/api/users", json={"username": "a", "email": "nope"})
        self.assertEqual(bad_email.json()["error"], "Invalid email format")

        bad_phone = self.client.post(
            "/api/users", json={"username": "a", "email": "a@example.com", "phone": "12"}
        )
        self.assertEqual(bad_phone.status_code, 400)
        self.assertEqual(bad_phone.json()["error"], "Invalid phone number format")

    def test_duplicate_id_conflicts(self) -> None:
        self.create_user()
        response = self.client.post(
            "/api/users", json={"id": "u1", "username": "other", "email": "other@example.com"}
        )
        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.json()["success"])

    def test_username_availability(self) -> None:
        self.create_user()
        taken = self.client.get("/api/users/check-username", params={"username": "asha"})
        free = self.client.get("/api/users/check-username", params={"username": "nobody"})
        missing = self.client.get("/api/users/check-username")

        self.assertEqual(taken.json(), {"username": "asha", "available": False})
        self.assertTrue(free.json()["available"])
        self.assertEqual(missing.status_code, 400)

    def test_partial_update(self) -> None:
        self.create_user()
        empty = self.client.put("/api/users/u1", json={"phone": "  "})
        self.assertEqual(empty.status_code, 400)

        updated = self.client.put("/api/users/u1", json={"email": "new@example.com"})
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["updatedUser"]["email"], "new@example.com")
        self.assertEqual(updated.json()["updatedUser"]["username"], "asha")

        unknown = self.client.put("/api/users/ghost", json={"email": "x@example.com"})
        self.assertEqual(unknown.status_code, 404)

    def test_delete_user_removes_transactions(self) -> None:
        self.create_user()
        for _ in range(3):
            self.create_transaction()

        response = self.client.delete("/api/users/u1")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["deletedUser"]["id"], "u1")
        self.assertEqual(body["deletedTransactionsCount"], 3)
        self.assertEqual(body["remainingTransactionsCount"], 0)
        self.assertEqual(self.client.get("/api/users/u1/transactions").json()["count"], 0)
        self.assertEqual(self.client.delete("/api/users/u1").status_code, 404)


class TransactionRouteTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create_user()

    def test_create_then_fetch_round_trip(self) -> None:
        created = self.create_transaction(
            amount="250.50",
            type="debit",
            category="Bills",
            tags="home, monthly",
            merchant="BESCOM",
            transaction_date="2024-05-10",
        )

        self.assertEqual(Decimal(created["amount"]), Decimal("250.50"))
        self.assertEqual(created["currency"], "INR")
        self.assertEqual(created["status"], "completed")
        self.assertEqual(created["tags"], ["home", "monthly"])
        self.assertEqual(created["transaction_date"], "2024-05-10")

        fetched = self.client.get(f"/api/users/u1/transactions/{created['id']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json(), created)

    def test_receipt_is_stored_inline(self) -> None:
        response = self.client.post(
            "/api/users/u1/transactions",
            data={"amount": "80", "type": "debit"},
            files={"receipt": ("bill.png", b"\x89PNG\r\n", "image/png")},
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["receiptUploaded"])
        self.assertTrue(body["transaction"]["receipt_url"].startswith("data:image/png;base64,"))
        self.assertEqual(body["transaction"]["receipt_filename"], "bill.png")

    def test_oversized_receipt_is_rejected(self) -> None:
        with mock.patch.object(main.settings, "MAX_RECEIPT_BYTES", 4):
            response = self.client.post(
                "/api/users/u1/transactions",
                data={"amount": "80", "type": "debit"},
                files={"receipt": ("bill.png", b"\x89PNG\r\n", "image/png")},
            )

        self.assertEqual(response.status_code, 413)
        self.assertFalse(response.json()["success"])
        self.assertIn("maximum size", response.json()["error"])
        listed = self.client.get("/api/users/u1/transactions").json()
        self.assertEqual(listed["count"], 0)

    def test_invalid_fields_are_rejected(self) -> None:
        missing_amount = self.client.post("/api/users/u1/transactions", data={"type": "debit"})
        self.assertEqual(missing_amount.status_code, 400)
        self.assertIn("Amount", missing_amount.json()["error"])

        bad_type = self.client.post("/api/users/u1/transactions", data={"amount": "10", "type": "refund"})
        self.assertEqual(bad_type.status_code, 400)

        bad_date = self.client.post(
            "/api/users/u1/transactions",
            data={"amount": "10", "type": "credit", "transaction_date": "05/10/2024"},
        )
        self.assertEqual(bad_date.status_code, 400)

        unknown_user = self.client.post("/api/users/ghost/transactions", data={"amount": "10", "type": "credit"})
        self.assertEqual(unknown_user.status_code, 404)

    def test_list_filters(self) -> None:
        self.create_transaction(type="debit", category="Bills", transaction_date="2024-05-01")
        self.create_transaction(type="credit", category="Income", transaction_date="2024-05-20")
        self.create_transaction(type="debit", category="Travel", transaction_date="2024-06-02")

        everything = self.client.get("/api/users/u1/transactions").json()
        debits = self.client.get("/api/users/u1/transactions", params={"type": "debit"}).json()
        may = self.client.get(
            "/api/users/u1/transactions",
            params={"start_date": "2024-05-01", "end_date": "2024-05-31"},
        ).json()

        self.assertTrue(everything["success"])
        self.assertEqual(everything["count"], 3)
        self.assertEqual(everything["data"][0]["transaction_date"], "2024-06-02")
        self.assertEqual(debits["count"], 2)
        self.assertEqual([row["category"] for row in may["data"]], ["Income", "Bills"])

    def test_update_replaces_fields(self) -> None:
        created = self.create_transaction(category="Bills", merchant="BESCOM")
        response = self.client.put(
            f"/api/users/u1/transactions/{created['id']}",
            json={"amount": 42, "type": "credit", "transaction_date": "2024-04-01"},
        )
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["type"], "credit")
        self.assertEqual(Decimal(data["amount"]), Decimal("42"))
        self.assertIsNone(data["category"])
        self.assertEqual(data["merchant"], "")

        missing = self.client.put("/api/users/u1/transactions/999", json={"amount": 1, "type": "debit"})
        self.assertEqual(missing.status_code, 404)

    def test_delete_single(self) -> None:
        created = self.create_transaction()
        response = self.client.delete(f"/api/users/u1/transactions/{created['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deletedTransaction"]["id"], created["id"])
        again = self.client.delete(f"/api/users/u1/transactions/{created['id']}")
        self.assertEqual(again.status_code, 404)

    def test_bulk_delete_reports_missing_ids(self) -> None:
        first = self.create_transaction()
        second = self.create_transaction()
        self.create_user("u2", "ravi")
        foreign = self.create_transaction(user_id="u2")

        response = self.client.request(
            "DELETE",
            "/api/users/u1/transactions",
            json={"transaction_ids": [first["id"], second["id"], foreign["id"], 999]},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body["deletedTransactions"]), 2)
        self.assertEqual(body["notFoundTransactionIds"], [foreign["id"], 999])
        self.assertEqual(self.client.get("/api/users/u2/transactions").json()["count"], 1)

    def test_bulk_delete_requires_ids(self) -> None:
        response = self.client.request("DELETE", "/api/users/u1/transactions", json={"transaction_ids": []})
        self.assertEqual(response.status_code, 400)

    def test_transaction_summary(self) -> None:
        today = date.today().isoformat()
        self.create_transaction(amount="1000", type="credit", category="Income", transaction_date=today)
        self.create_transaction(amount="300", type="debit", category="Bills", transaction_date=today)

        response = self.client.get("/api/users/u1/transactions/summary")

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["total_transactions"], 2)
        self.assertEqual(Decimal(data["income"]), Decimal("1000"))
        self.assertEqual(Decimal(data["balance"]), Decimal("700"))

    def test_non_integer_transaction_id_is_400(self) -> None:
        response = self.client.get("/api/users/u1/transactions/abc")
        self.assertEqual(response.status_code, 400)
        self.assertIn("transaction_id", response.json()["error"])


class FinanceRouteTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create_user()

    def test_day_summary(self) -> None:
        today = date.today().isoformat()
        self.create_transaction(amount="1000", type="credit", transaction_date=today)
        self.create_transaction(amount="300", type="debit", transaction_date=today)
        self.create_transaction(amount="200", type="debit", transaction_date=today)

        response = self.client.get("/api/users/u1/finance/summary", params={"period": "day"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["period"], "day")
        self.assertEqual(Decimal(body["income"]), Decimal("1000"))
        self.assertEqual(Decimal(body["expenses"]), Decimal("500"))
        self.assertEqual(Decimal(body["balance"]), Decimal("500"))
        self.assertEqual(body["transaction_count"], {"income": 1, "expenses": 2})

    def test_invalid_period(self) -> None:
        response = self.client.get("/api/users/u1/finance/summary", params={"period": "decade"})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    def test_breakdown_by_month(self) -> None:
        self.create_transaction(amount="500", type="credit", transaction_date="2024-04-03")
        self.create_transaction(amount="120", type="debit", transaction_date="2024-05-02")

        response = self.client.get("/api/users/u1/finance/breakdown", params={"groupBy": "month"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["group_by"], "month")
        self.assertEqual([bucket["period"] for bucket in body["breakdown"]], ["2024-05", "2024-04"])
        self.assertEqual(body["breakdown"][0]["transaction_count"], {"income": 0, "expenses": 1, "total": 1})
        self.assertEqual(Decimal(body["summary"]["total_balance"]), Decimal("380"))
        self.assertEqual(body["summary"]["total_transactions"], 2)


class UploadRouteTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create_user()

    def test_file_upload_returns_candidates(self) -> None:
        response = self.client.post(
            "/api/upload/file",
            files={"file": ("may.csv", STATEMENT_CSV, "text/csv")},
            data={"userId": "u1"},
        )

        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["fileName"], "may.csv")
        self.assertEqual(data["fileType"], "text/csv")
        self.assertEqual(data["totalTransactions"], 3)
        self.assertEqual(data["discardedTransactions"], 0)
        self.assertEqual({row["type"] for row in data["transactions"]}, {"credit", "debit"})
        self.assertIn("SWIGGY ORDER", self.model.prompts[0])
        # extraction never writes to the ledger
        self.assertEqual(self.client.get("/api/users/u1/transactions").json()["count"], 0)

    def test_file_upload_errors(self) -> None:
        no_file = self.client.post("/api/upload/file", data={"userId": "u1"})
        self.assertEqual(no_file.status_code, 400)
        self.assertEqual(no_file.json()["error"], "No file uploaded")

        image = self.client.post(
            "/api/upload/file",
            files={"file": ("receipt.png", b"\x89PNG", "image/png")},
            data={"userId": "u1"},
        )
        self.assertEqual(image.status_code, 400)
        self.assertEqual(image.json()["error"], "Unsupported file type")

        self.model.error = ModelUnavailable("down")
        failed = self.client.post(
            "/api/upload/file",
            files={"file": ("may.csv", STATEMENT_CSV, "text/csv")},
            data={"userId": "u1"},
        )
        self.assertEqual(failed.status_code, 500)

    def test_bulk_upload_and_history(self) -> None:
        rows = [
            {"title": "Salary", "date": "2024-05-01", "type": "credit", "amount": "85000", "category": "Income"},
            {"description": "SWIGGY ORDER", "type": "debit", "amount": -640, "category": "Food & Drinks"},
        ]

        response = self.client.post("/api/upload/bulk", json={"userId": "u1", "transactions": rows})

        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["totalUploaded"], 2)
        self.assertEqual(data["transactions"][0]["description"], "Salary")
        self.assertEqual(Decimal(data["transactions"][1]["amount"]), Decimal("640"))
        self.assertEqual(data["transactions"][1]["transaction_date"], date.today().isoformat())

        history = self.client.get("/api/upload/history/u1").json()["data"]
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["transaction_count"], 2)
        self.assertEqual(history[0]["categories"], "Food & Drinks, Income")

    def test_bulk_upload_validation(self) -> None:
        empty = self.client.post("/api/upload/bulk", json={"userId": "u1", "transactions": []})
        self.assertEqual(empty.status_code, 400)

        not_list = self.client.post("/api/upload/bulk", json={"userId": "u1", "transactions": {"a": 1}})
        self.assertEqual(not_list.status_code, 400)

        bad_row = self.client.post(
            "/api/upload/bulk",
            json={"userId": "u1", "transactions": [{"type": "transfer", "amount": 5}]},
        )
        self.assertEqual(bad_row.status_code, 400)
        self.assertIn("Row 1", bad_row.json()["error"])

        ghost = self.client.post(
            "/api/upload/bulk",
            json={"userId": "ghost", "transactions": [{"type": "debit", "amount": 5}]},
        )
        self.assertEqual(ghost.status_code, 404)

    def test_bulk_upload_checks_user_before_rows(self) -> None:
        response = self.client.post(
            "/api/upload/bulk",
            json={"userId": "ghost", "transactions": [{"type": "transfer", "amount": 5}]},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "User not found")


class AssistantRouteTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create_user()

    def test_chat_reply(self) -> None:
        self.model.reply = "You spent 300 on bills."
        self.create_transaction(amount="300", type="debit", category="Bills")

        response = self.client.post(
            "/api/ai/chat",
            json={
                "message": "How much on bills?",
                "userId": "u1",
                "conversationHistory": [{"role": "user", "content": "hello"}],
            },
        )

        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["message"], "You spent 300 on bills.")
        self.assertTrue(data["dataUsed"])
        self.assertIn("timestamp", data)
        self.assertIn("user: hello", self.model.prompts[0])

    def test_chat_errors(self) -> None:
        missing = self.client.post("/api/ai/chat", json={"userId": "u1"})
        self.assertEqual(missing.status_code, 400)

        self.model.error = ModelUnavailable("down")
        failed = self.client.post("/api/ai/chat", json={"message": "hi", "userId": "u1"})
        self.assertEqual(failed.status_code, 500)
        self.assertEqual(failed.json()["error"], "Failed to process AI request. Please try again.")

    def test_market_data_shape(self) -> None:
        data = self.client.get("/api/ai/market-data").json()["data"]
        self.assertEqual(set(data), {"stocks", "commodities", "crypto", "lastUpdated"})
        self.assertEqual(data["commodities"]["gold"]["unit"], "per 10g")


class ErrorEnvelopeTests(ApiTestCase):
    def test_unknown_route_is_json_404(self) -> None:
        response = self.client.get("/api/nowhere")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])
        self.assertIn("/api/nowhere", response.json()["error"])

    def test_rate_limit_applies_to_routes(self) -> None:
        main.app.state.rate_limiter = TokenBucketRateLimiter(capacity=1, window_seconds=60.0)
        self.assertEqual(self.client.get("/health").status_code, 200)
        limited = self.client.get("/health")
        self.assertEqual(limited.status_code, 429)
        self.assertEqual(limited.json()["error"], "Rate limit exceeded")


if __name__ == "__main__":
    unittest.main()
