"""HTTP surface: routing, tenant scoping and error mapping.

Runs the FastAPI app in-process against the SQLite test database.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from coopledger.database import get_db
from coopledger.main import app


@pytest_asyncio.fixture
async def client(session_factory):
    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-Tenant-ID": "1"}
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


async def _party(client, code="C-100", side="receivable", **extra):
    resp = await client.post("/api/ledger/parties", json={
        "side": side, "code": code, "name": f"Party {code}", **extra,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Basics ─────────────────────────────────────────────────────────

class TestBasics:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_tenant_header_required(self, client):
        resp = await client.get("/api/ledger/parties/1", headers={"X-Tenant-ID": ""})
        assert resp.status_code in (400, 422)

    @pytest.mark.asyncio
    async def test_unknown_party_is_404(self, client):
        resp = await client.get("/api/ledger/parties/999")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_party_code_conflicts(self, client):
        await _party(client, "DUP")
        resp = await client.post("/api/ledger/parties", json={
            "side": "receivable", "code": "DUP", "name": "Again",
        })
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_party_hidden_from_other_tenant(self, client):
        party = await _party(client)
        resp = await client.get(f"/api/ledger/parties/{party['id']}", headers={"X-Tenant-ID": "2"})
        assert resp.status_code == 404


# ── Ledger ─────────────────────────────────────────────────────────

class TestLedgerEndpoints:

    @pytest.mark.asyncio
    async def test_fifo_payment_round_trip(self, client):
        party = await _party(client)
        first = (await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 500,
            "transaction_date": "2026-05-11", "due_date": "2026-06-10",
        })).json()
        second = (await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 300,
            "transaction_date": "2026-06-10", "due_date": "2026-07-10",
        })).json()

        resp = await client.post("/api/ledger/payments", json={
            "party_id": party["id"], "amount": 600, "payment_date": "2026-06-30",
        })
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert [(a["obligation_id"], a["amount"]) for a in body["allocations"]] == [
            (first["id"], 500), (second["id"], 100),
        ]

        party_now = (await client.get(f"/api/ledger/parties/{party['id']}")).json()
        assert party_now["outstanding_total"] == 200

        aging = (await client.get("/api/ledger/aging", params={
            "side": "receivable", "reference_date": "2026-06-30",
        })).json()
        assert aging["current"]["amount"] == 200
        assert aging["total_amount"] == 200

    @pytest.mark.asyncio
    async def test_overpayment_is_422_with_constraint(self, client):
        party = await _party(client)
        await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 500, "transaction_date": "2026-05-11",
        })
        resp = await client.post("/api/ledger/payments", json={
            "party_id": party["id"], "amount": 501, "payment_date": "2026-06-30",
        })
        assert resp.status_code == 422
        assert resp.json()["constraint"] == "payment_ceiling"

    @pytest.mark.asyncio
    async def test_rejected_request_rolls_back(self, client):
        party = await _party(client)
        resp = await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 500,
            "transaction_date": "2026-06-01", "due_date": "2026-05-01",
        })
        assert resp.status_code == 422
        party_now = (await client.get(f"/api/ledger/parties/{party['id']}")).json()
        assert party_now["outstanding_total"] == 0

    @pytest.mark.asyncio
    async def test_purchase_order_gets_document_number(self, client):
        supplier = await _party(client, "S-100", side="payable")
        resp = await client.post("/api/ledger/obligations", json={
            "party_id": supplier["id"], "amount": 9_000,
            "transaction_date": "2026-06-01", "origin_type": "purchase_order",
        })
        assert resp.status_code == 201, resp.text
        assert resp.json()["origin_reference"] == "PO-2026-000001"

    @pytest.mark.asyncio
    async def test_wallet_restriction_detail(self, client):
        party = await _party(client)
        wallet = (await client.post(f"/api/ledger/parties/{party['id']}/wallets", json={
            "name": "Rice Subsidy", "balance": 10_000, "allowed_category_ids": [1, 2, 3],
        })).json()
        resp = await client.post(f"/api/ledger/wallets/{wallet['id']}/payments", json={
            "on": "2026-06-01",
            "lines": [{
                "product_name": "Cooking Oil", "category_id": 4,
                "category_name": "Groceries", "amount": 500,
            }],
        })
        assert resp.status_code == 422
        body = resp.json()
        assert body["constraint"] == "wallet_category"
        assert body["wallet_name"] == "Rice Subsidy"
        assert body["product_name"] == "Cooking Oil"
        assert body["category_id"] == 4

    @pytest.mark.asyncio
    async def test_statement_and_credit(self, client):
        party = await _party(client, credit_limit=1_000)
        await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 800, "transaction_date": "2026-06-01",
        })
        stmt = (await client.get(f"/api/ledger/parties/{party['id']}/statement", params={
            "date_from": "2026-06-01", "date_to": "2026-06-30",
        })).json()
        assert stmt["total_charges"] == 800
        assert stmt["closing_balance"] == 800

        credit = (await client.get(
            f"/api/ledger/parties/{party['id']}/credit-availability", params={"amount": 300},
        )).json()
        assert credit["available"] == 200
        assert credit["is_available"] is False


# ── Loans & accounts ───────────────────────────────────────────────

class TestLoanEndpoints:

    @pytest.mark.asyncio
    async def test_schedule_preview(self, client):
        resp = await client.post("/api/loans/schedule-preview", json={
            "principal": 12_000, "monthly_rate": "0.02", "term_months": 12,
            "first_payment_date": "2026-02-01",
        })
        assert resp.status_code == 200
        entries = resp.json()
        assert len(entries) == 12
        assert entries[0]["total"] == 1_135
        assert sum(e["principal"] for e in entries) == 12_000

    @pytest.mark.asyncio
    async def test_lifecycle(self, client):
        party = await _party(client)
        loan = (await client.post("/api/loans", json={
            "party_id": party["id"], "principal": 12_000, "monthly_rate": "0.02",
            "term_months": 12, "application_date": "2025-12-15",
        })).json()
        assert loan["status"] == "pending"

        resp = await client.post(f"/api/loans/{loan['id']}/approve", json={"on": "2025-12-20"})
        assert resp.json()["status"] == "approved"
        resp = await client.post(f"/api/loans/{loan['id']}/disburse", json={"on": "2026-01-01"})
        assert len(resp.json()) == 12

        resp = await client.post(f"/api/loans/{loan['id']}/payments", json={
            "amount": 1_135, "payment_date": "2026-02-01",
        })
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["interest_paid"] == 240
        assert body["principal_paid"] == 895
        assert body["loan_status"] == "active"


class TestAccountEndpoints:

    @pytest.mark.asyncio
    async def test_minimum_balance_enforced(self, client):
        party = await _party(client)
        account = (await client.post("/api/accounts/savings", json={
            "party_id": party["id"], "opened_on": "2026-01-05",
            "minimum_balance": 1_000, "initial_deposit": 5_000,
        })).json()

        resp = await client.post(f"/api/accounts/savings/{account['id']}/withdrawals", json={
            "amount": 4_500, "on": "2026-02-01",
        })
        assert resp.status_code == 422
        assert resp.json()["constraint"] == "withdrawal_limit"

        resp = await client.post(f"/api/accounts/savings/{account['id']}/withdrawals", json={
            "amount": 4_000, "on": "2026-02-01",
        })
        assert resp.status_code == 201
        assert resp.json()["balance_after"] == 1_000

    @pytest.mark.asyncio
    async def test_share_certificate(self, client):
        party = await _party(client)
        account = (await client.post("/api/accounts/shares", json={
            "party_id": party["id"], "subscribed_shares": 10,
            "par_value_per_share": 10_000, "opened_on": "2026-01-05",
        })).json()
        await client.post(f"/api/accounts/shares/{account['id']}/payments", json={
            "amount": 25_000, "on": "2026-02-01",
        })
        resp = await client.post(f"/api/accounts/shares/{account['id']}/certificates", json={
            "on": "2026-02-01",
        })
        assert resp.status_code == 201, resp.text
        assert resp.json()["shares"] == 2

        cancel = await client.post(
            f"/api/accounts/shares/certificates/{resp.json()['id']}/cancel",
            json={"on": "2026-02-02", "reason": "Misprinted name"},
        )
        assert cancel.status_code == 200, cancel.text
        assert cancel.json()["is_cancelled"] is True
        shares = (await client.get(f"/api/accounts/shares/{account['id']}/certificates")).json()
        assert [c["is_cancelled"] for c in shares] == [True]


class TestPatronageEndpoints:

    @pytest.mark.asyncio
    async def test_batch_round_trip(self, client):
        party = await _party(client, is_member=True)
        await client.post("/api/ledger/obligations", json={
            "party_id": party["id"], "amount": 50_000,
            "transaction_date": "2026-03-01", "origin_type": "sale",
        })
        batch = (await client.post("/api/patronage/batches", json={
            "period_label": "FY2026", "period_from": "2026-01-01", "period_to": "2026-12-31",
            "method": "rate_based", "rate": "0.03",
        })).json()

        resp = await client.post(f"/api/patronage/batches/{batch['id']}/compute", json={})
        assert resp.status_code == 200, resp.text
        allocation = resp.json()[0]
        assert allocation["allocation_amount"] == 1_500

        resp = await client.post(f"/api/patronage/batches/{batch['id']}/approve", json={
            "on": "2027-01-15",
        })
        assert resp.json()["status"] == "approved"

        resp = await client.post(f"/api/patronage/allocations/{allocation['id']}/distribute", json={
            "on": "2027-01-20", "method": "cash",
        })
        assert resp.status_code == 200, resp.text

        summary = (await client.get(f"/api/patronage/batches/{batch['id']}")).json()
        assert summary["batch"]["status"] == "completed"
        assert summary["batch"]["total_distributed"] == 1_500
        party_now = (await client.get(f"/api/ledger/parties/{party['id']}")).json()
        assert party_now["accumulated_patronage"] == 1_500


class TestLoanReversalEndpoint:

    @pytest.mark.asyncio
    async def test_loan_payment_reversal(self, client):
        party = await _party(client)
        loan = (await client.post("/api/loans", json={
            "party_id": party["id"], "principal": 12_000, "monthly_rate": "0.02",
            "term_months": 12, "application_date": "2025-12-15",
        })).json()
        await client.post(f"/api/loans/{loan['id']}/approve", json={"on": "2025-12-20"})
        await client.post(f"/api/loans/{loan['id']}/disburse", json={"on": "2026-01-01"})
        payment = (await client.post(f"/api/loans/{loan['id']}/payments", json={
            "amount": 1_135, "payment_date": "2026-02-01",
        })).json()

        resp = await client.post(f"/api/loans/payments/{payment['payment_id']}/reverse", json={
            "on": "2026-02-02", "reason": "Bounced cheque",
        })
        assert resp.status_code == 200, resp.text
        assert resp.json()["is_reversed"] is True
        loan_now = (await client.get(f"/api/loans/{loan['id']}")).json()
        assert loan_now["outstanding_balance"] == 13_615
