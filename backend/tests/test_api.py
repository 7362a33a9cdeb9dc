"""
API tests: authentication, creator views, internal ingestion and scheduler
endpoints, processor webhooks and the admin console.

Seeding and assertions go through short-lived sessions from
`session_factory`; the in-memory database is one shared connection.
"""
import asyncio
import json
from datetime import date

import pytest

from royalty.auth import create_access_token
from royalty.models.db_models import LedgerAccountDB, PayoutDB, TransactionDB
from royalty.models.domain import TransactionSource
from royalty.services.payouts import SIGNATURE_HEADER, sign_payload


@pytest.fixture
def internal_headers(settings):
    return {"X-Internal-Key": settings.internal_api_key}


def bearer(settings, subject, role="creator"):
    return {"Authorization": f"Bearer {create_access_token(settings.jwt_secret_key, subject, role)}"}


def seed_credit(engine, session_factory, account_id, cents, key="seed"):
    with session_factory() as s:
        tx_id = engine.ledger(s).credit(account_id, cents, TransactionSource.STREAM_VIEW, key)
        s.commit()
    return tx_id


def account_state(session_factory, account_id):
    with session_factory() as s:
        account = s.get(LedgerAccountDB, account_id)
        return account.balance_cents, account.reserved_cents, account.total_paid_out_cents


# =============================================================================
# TEST: BASICS & AUTH
# =============================================================================

class TestAuth:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_creator_reads_own_summary(self, client, engine, session_factory, settings):
        seed_credit(engine, session_factory, "alice", 1_250)

        response = client.get("/accounts/alice/summary", headers=bearer(settings, "alice"))

        assert response.status_code == 200
        body = response.json()
        assert body["balance_cents"] == 1_250
        assert body["total_earned_cents"] == 1_250
        assert body["recent_transactions"][0]["source"] == "stream-view"

    def test_creator_cannot_read_other_account(self, client, engine, session_factory, settings):
        seed_credit(engine, session_factory, "alice", 1_250)

        response = client.get("/accounts/alice/summary", headers=bearer(settings, "mallory"))

        assert response.status_code == 403

    def test_admin_reads_any_account(self, client, engine, session_factory, settings):
        seed_credit(engine, session_factory, "alice", 1_250)

        response = client.get("/accounts/alice/summary", headers=bearer(settings, "ops", role="admin"))

        assert response.status_code == 200

    def test_invalid_token(self, client):
        response = client.get("/accounts/alice/summary", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_missing_token(self, client):
        assert client.get("/accounts/alice/summary").status_code in (401, 403)

    def test_unknown_account(self, client, settings):
        response = client.get("/accounts/ghost/summary", headers=bearer(settings, "ghost"))
        assert response.status_code == 404

    def test_internal_endpoints_need_the_key(self, client):
        payload = {"events": []}
        assert client.post("/internal/stream-events", json=payload).status_code == 422
        wrong = client.post("/internal/stream-events", json=payload, headers={"X-Internal-Key": "nope"})
        assert wrong.status_code == 403


# =============================================================================
# TEST: INGESTION
# =============================================================================

class TestIngestion:

    def test_stream_events_are_stored_once(self, client, internal_headers):
        payload = {"events": [
            {"creator_id": "alice", "duration_seconds": 42, "fraud_score": 0.1,
             "occurred_at": "2024-01-10T12:00:00Z", "event_id": "ev-1"},
            {"creator_id": "alice", "duration_seconds": 12, "fraud_score": 0.1,
             "occurred_at": "2024-01-10T12:05:00Z", "event_id": "ev-2"},
        ]}

        first = client.post("/internal/stream-events", json=payload, headers=internal_headers).json()
        replay = client.post("/internal/stream-events", json=payload, headers=internal_headers).json()

        assert first == {"received": 2, "stored": 2, "duplicates": 0, "qualified": 1}
        assert replay["duplicates"] == 2

    def test_out_of_range_fraud_score_is_rejected(self, client, internal_headers):
        payload = {"events": [{"creator_id": "alice", "duration_seconds": 42, "fraud_score": 1.4,
                               "occurred_at": "2024-01-10T12:00:00Z"}]}
        response = client.post("/internal/stream-events", json=payload, headers=internal_headers)
        assert response.status_code == 422

    def test_revenue_is_recorded_once(self, client, internal_headers):
        payload = {"period_start": "2024-01-01", "period_end": "2024-01-31",
                   "total_revenue_cents": 100_000, "external_id": "billing-jan"}

        first = client.post("/internal/revenue", json=payload, headers=internal_headers).json()
        second = client.post("/internal/revenue", json=payload, headers=internal_headers).json()

        assert first["duplicate"] is False
        assert second == {"duplicate": True, "period_revenue_id": first["period_revenue_id"]}

    def test_profile_then_single_payout(self, client, engine, session_factory, internal_headers):
        seed_credit(engine, session_factory, "alice", 6_000)
        profile = {"country": "us", "connect_account_id": "acct_1", "min_payout_cents": 1_000}

        updated = client.put("/internal/creators/alice", json=profile, headers=internal_headers).json()
        payout = client.post("/internal/payouts/alice", headers=internal_headers).json()

        assert updated["min_payout_applied"] is True
        assert payout["status"] == "completed"
        assert payout["method"] == "connect"
        assert account_state(session_factory, "alice") == (0, 0, 6_000)

    def test_collaboration_split(self, client, session_factory, internal_headers):
        body = {"total_cents": 10_000, "splits": {"alice": 70, "bob": 30}}

        response = client.post("/internal/collaborations/track-1/split", json=body, headers=internal_headers)

        assert response.status_code == 200
        assert response.json()["credits"]["bob"]["amount_cents"] == 3_000
        assert account_state(session_factory, "alice")[0] == 7_000

    def test_split_over_100_percent_is_rejected(self, client, internal_headers):
        body = {"total_cents": 10_000, "splits": {"alice": 70, "bob": 50}}
        response = client.post("/internal/collaborations/track-1/split", json=body, headers=internal_headers)
        assert response.status_code == 422


# =============================================================================
# TEST: SCHEDULER
# =============================================================================

class TestSchedulerEndpoints:

    def test_trigger_job_once_per_period(self, client, internal_headers):
        url = "/internal/jobs/monthly_distribution"
        body = {"period_start": "2024-01-01"}

        first = client.post(url, json=body, headers=internal_headers).json()
        second = client.post(url, json=body, headers=internal_headers).json()

        assert first["status"] == "succeeded"
        assert second["already_succeeded"] is True

        runs = client.get("/internal/jobs", headers=internal_headers).json()["runs"]
        assert len(runs) == 1

    def test_unknown_job_type(self, client, internal_headers):
        assert client.post("/internal/jobs/backup", headers=internal_headers).status_code == 422

    def test_tick(self, client, internal_headers):
        response = client.post(
            "/internal/scheduler/tick", json={"now": "2024-02-01T00:30:00Z"}, headers=internal_headers
        ).json()

        fired = {run["job_type"]: run for run in response["fired"]}
        assert sorted(fired) == ["daily_stream_royalties", "monthly_distribution"]
        assert fired["monthly_distribution"]["period_start"] == "2024-01-01"
        assert fired["daily_stream_royalties"]["period_start"] == "2024-01-30"

    def test_payout_channel_calls_run_off_the_event_loop(
        self, client, engine, session_factory, internal_headers, monkeypatch
    ):
        loop_running = []
        send = engine.payment_gateway.send

        def recording_send(channel, payload):
            try:
                asyncio.get_running_loop()
                loop_running.append(True)
            except RuntimeError:
                loop_running.append(False)
            return send(channel, payload)

        monkeypatch.setattr(engine.payment_gateway, "send", recording_send)
        seed_credit(engine, session_factory, "alice", 6_000)
        client.put("/internal/creators/alice", json={"connect_account_id": "acct_1"}, headers=internal_headers)

        client.post("/internal/payouts/alice", headers=internal_headers)
        seed_credit(engine, session_factory, "bob", 6_000)
        client.put("/internal/creators/bob", json={"connect_account_id": "acct_2"}, headers=internal_headers)
        client.post("/internal/jobs/payout_run", json={"period_start": "2024-02-01"}, headers=internal_headers)

        assert loop_running == [False, False]


# =============================================================================
# TEST: WEBHOOKS
# =============================================================================

class TestWebhooks:

    def post_event(self, client, settings, event, secret=None):
        body = json.dumps(event).encode("utf-8")
        signature = sign_payload(secret or settings.processor_webhook_secret, body)
        return client.post(
            "/webhooks/processor",
            content=body,
            headers={SIGNATURE_HEADER: signature, "Content-Type": "application/json"},
        )

    def test_bad_signature(self, client, settings):
        event = {"id": "evt_1", "type": "tip.succeeded", "data": {"creator_id": "alice", "amount_cents": 100}}
        assert self.post_event(client, settings, event, secret="wrong").status_code == 401

    def test_tip_is_credited_once(self, client, settings, session_factory):
        event = {"id": "evt_1", "type": "tip.succeeded", "data": {"creator_id": "alice", "amount_cents": 300}}

        first = self.post_event(client, settings, event)
        replay = self.post_event(client, settings, event)

        assert first.json()["status"] == "credited"
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True
        assert account_state(session_factory, "alice")[0] == 300

    def test_mismatch_is_accepted_for_review(self, client, settings, session_factory):
        event = {"id": "evt_2", "type": "payout.paid", "data": {"external_reference": "po_unknown"}}

        response = self.post_event(client, settings, event)

        assert response.status_code == 202
        assert response.json()["status"] == "mismatch"

        admin = bearer(settings, "ops", role="admin")
        audit = client.get("/admin/audit", params={"event_type": "reconciliation_mismatch"}, headers=admin)
        assert audit.json()["count"] == 1

    def test_pending_payout_confirmed(self, client, engine, settings, session_factory, internal_headers):
        engine.payment_gateway.outcomes["connect"] = "pending"
        seed_credit(engine, session_factory, "alice", 6_000)
        client.put("/internal/creators/alice", json={"connect_account_id": "acct_1"}, headers=internal_headers)
        payout = client.post("/internal/payouts/alice", headers=internal_headers).json()
        assert payout["status"] == "pending"

        event = {"id": "evt_3", "type": "payout.paid",
                 "data": {"external_reference": payout["external_reference"]}}
        response = self.post_event(client, settings, event)

        assert response.json()["status"] == "completed"
        assert account_state(session_factory, "alice") == (0, 0, 6_000)


# =============================================================================
# TEST: ADMIN
# =============================================================================

class TestAdmin:

    def test_creator_cannot_use_admin_console(self, client, settings):
        assert client.get("/admin/audit", headers=bearer(settings, "alice")).status_code == 403

    def test_audit_query_and_csv_export(self, client, engine, session_factory, settings):
        seed_credit(engine, session_factory, "alice", 500)
        admin = bearer(settings, "ops", role="admin")

        entries = client.get("/admin/audit", params={"account_id": "alice"}, headers=admin).json()["entries"]
        export = client.get("/admin/audit/export", params={"fmt": "csv"}, headers=admin)

        assert [e["event_type"] for e in entries] == ["ledger_credit"]
        assert export.headers["content-type"].startswith("text/csv")
        assert export.text.splitlines()[0].startswith("id,created_at,event_type")
        assert "ledger_credit" in export.text

    def test_export_rejects_unknown_format(self, client, settings):
        admin = bearer(settings, "ops", role="admin")
        assert client.get("/admin/audit/export", params={"fmt": "xml"}, headers=admin).status_code == 422

    def test_fraud_reversal(self, client, engine, session_factory, settings):
        tx_id = seed_credit(engine, session_factory, "alice", 2_000)
        admin = bearer(settings, "ops", role="admin")

        response = client.post(f"/admin/transactions/{tx_id}/reverse", json={"reason": "bot farm"}, headers=admin)

        assert response.status_code == 200
        assert account_state(session_factory, "alice")[0] == 0
        with session_factory() as s:
            reversal = s.get(TransactionDB, response.json()["reversal_transaction_id"])
            assert reversal.amount_cents == -2_000

    def test_reversal_of_paid_out_credit_conflicts(self, client, engine, session_factory, settings, internal_headers):
        tx_id = seed_credit(engine, session_factory, "alice", 6_000)
        client.put("/internal/creators/alice", json={"connect_account_id": "acct_1"}, headers=internal_headers)
        client.post("/internal/payouts/alice", headers=internal_headers)
        admin = bearer(settings, "ops", role="admin")

        response = client.post(f"/admin/transactions/{tx_id}/reverse", json={"reason": "late"}, headers=admin)

        assert response.status_code == 409

    def test_settle_manual_invoice(self, client, engine, session_factory, settings, internal_headers):
        seed_credit(engine, session_factory, "alice", 6_000)
        payout = client.post("/internal/payouts/alice", headers=internal_headers).json()
        assert payout["method"] == "manual-invoice"
        admin = bearer(settings, "ops", role="admin")

        response = client.post(f"/admin/payouts/{payout['payout_id']}/settle",
                               json={"reference": "wire-1"}, headers=admin)

        assert response.json()["status"] == "completed"
        assert account_state(session_factory, "alice") == (0, 0, 6_000)
        with session_factory() as s:
            assert s.get(PayoutDB, payout["payout_id"]).channel_details["settlement_reference"] == "wire-1"

    def test_priority_override(self, client, settings):
        admin = bearer(settings, "ops", role="admin")

        response = client.put("/admin/priority/alice", json={"active": True, "priority_level": 4}, headers=admin)

        assert response.json() == {
            "creator_id": "alice", "active": True, "priority_level": 4, "manual_override": True,
        }
        bad = client.put("/admin/priority/alice", json={"active": True, "priority_level": 9}, headers=admin)
        assert bad.status_code == 422

    def test_treasury_balances(self, client, engine, session_factory, settings):
        with session_factory() as s:
            engine.distributor(s).distribute(100_000, date(2024, 1, 1), date(2024, 1, 31))
            s.commit()
        admin = bearer(settings, "ops", role="admin")

        response = client.get("/admin/treasury", params={"period_start": "2024-01-01", "period_end": "2024-01-31"},
                              headers=admin)

        funds = {f["fund"]: f for f in response.json()["funds"]}
        assert funds["platform-ops"]["allocated_cents"] == 30_000
        assert funds["creator-pool"]["balance_cents"] == 50_000
        assert sum(f["allocated_cents"] for f in funds.values()) == 100_000
