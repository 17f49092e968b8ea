"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from trust_kernel.api.app import create_app
from trust_kernel.config import Settings
from trust_kernel.recommendations.collaborators import InMemoryPublisher
from trust_kernel.storage.store import KernelStore

DOMAIN = "shop.example"


def _make_signals(value: int) -> dict:
    return {
        "experience": value,
        "responsiveness": value,
        "stability": value,
        "recency": value,
        "risk": value,
    }


@pytest.fixture
def store():
    return KernelStore(":memory:")


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def client(store, publisher):
    """Create a test client with a registered tenant."""
    app = create_app(
        settings=Settings(database_path=":memory:"),
        store=store,
        publisher=publisher,
    )
    client = TestClient(app)
    client.post("/tenants", json={"domain": DOMAIN, "name": "Example Shop"})
    return client


def _propose(client, **overrides) -> str:
    body = {"kind": "FAQ", "title": "How long do returns take?", "target_ref": "/pages/faq"}
    body.update(overrides)
    response = client.post(f"/tenants/{DOMAIN}/recommendations", json=body)
    assert response.status_code == 200
    return response.json()["recommendation"]["id"]


def _seed_campaign_audience(client) -> str:
    happy = {"rating": 5, "sentiment": "positive", "referral_sent": False}
    customers = [{"email": f"fan{i}@example.com", "attributes": happy} for i in range(3)]
    customers.append({"email": "grumpy@example.com", "attributes": {**happy, "rating": 1}})
    client.post(f"/tenants/{DOMAIN}/customers", json={"customers": customers})
    response = client.post(f"/tenants/{DOMAIN}/rulesets", json={
        "name": "Happy reviewers",
        "conditions": {"rating_gte": 5, "sentiment": "positive", "referral_sent": False},
    })
    return response.json()["rule_set"]["id"]


class TestTenantAndTrustEndpoints:
    def test_register_is_idempotent(self, client):
        first = client.post("/tenants", json={"domain": DOMAIN}).json()
        second = client.post("/tenants", json={"domain": DOMAIN}).json()
        assert first["tenant"]["id"] == second["tenant"]["id"]
        assert second["tenant"]["name"] == "Example Shop"

    def test_latest_trust_cold_start(self, client):
        response = client.get(f"/tenants/{DOMAIN}/trust/latest")
        assert response.status_code == 200
        data = response.json()
        assert data["snapshot"]["total"] == 70
        assert data["policy"]["zone"] == "READY"
        assert isinstance(data["stale"], bool)

    def test_record_snapshot_changes_policy(self, client):
        response = client.post(f"/tenants/{DOMAIN}/trust/snapshots", json=_make_signals(90))
        assert response.status_code == 200
        assert response.json()["policy"]["zone"] == "ADVOCACY"

        latest = client.get(f"/tenants/{DOMAIN}/trust/latest").json()
        assert latest["snapshot"]["total"] == 90

    def test_out_of_range_signal_rejected(self, client):
        response = client.post(f"/tenants/{DOMAIN}/trust/snapshots", json=_make_signals(101))
        assert response.status_code == 422

    def test_unknown_tenant(self, client):
        response = client.get("/tenants/nobody.example/trust/latest")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_storage_failure_degrades_reads(self, client, store):
        store.close()
        response = client.get(f"/tenants/{DOMAIN}/trust/latest")
        assert response.status_code == 200
        assert response.json()["degraded"] is True
        assert response.json()["error"] == "storage_unavailable"

        receipts = client.get(f"/tenants/{DOMAIN}/receipts")
        assert receipts.status_code == 200
        assert receipts.json()["degraded"] is True

    def test_storage_failure_surfaces_on_writes(self, client, store):
        store.close()
        response = client.post(f"/tenants/{DOMAIN}/recommendations", json={
            "kind": "FAQ", "title": "Shipping", "target_ref": "/pages/faq",
        })
        assert response.status_code == 503
        assert response.json()["error"] == "storage_unavailable"


class TestRecommendationEndpoints:
    def test_full_flow(self, client, publisher):
        rec_id = _propose(client)
        base = f"/tenants/{DOMAIN}/recommendations/{rec_id}"

        assert client.post(f"{base}/draft").json()["recommendation"]["status"] == "DRAFTED"
        approved = client.post(f"{base}/approve", json={"approver": "owner@shop.example"})
        assert approved.json()["recommendation"]["approved_by"] == "owner@shop.example"

        published = client.post(f"{base}/publish")
        assert published.status_code == 200
        assert published.json()["recommendation"]["status"] == "PUBLISHED"
        assert publisher.publish_count() == 1

    def test_skipping_a_state(self, client):
        rec_id = _propose(client)
        response = client.post(f"/tenants/{DOMAIN}/recommendations/{rec_id}/approve")
        assert response.status_code == 409
        data = response.json()
        assert data["ok"] is False
        assert data["error"] == "invalid_state"
        assert data["actual"] == "PROPOSED"

    def test_unsafe_publish_forbidden(self, client):
        rec_id = _propose(client)
        base = f"/tenants/{DOMAIN}/recommendations/{rec_id}"
        client.post(f"{base}/draft")
        client.post(f"{base}/approve")
        client.post(f"/tenants/{DOMAIN}/trust/snapshots", json=_make_signals(10))

        response = client.post(f"{base}/publish")
        assert response.status_code == 403
        assert response.json()["error"] == "policy_block"
        assert response.json()["zone"] == "UNSAFE"

    def test_draft_override_and_verification(self, client):
        rec_id = _propose(client)
        base = f"/tenants/{DOMAIN}/recommendations/{rec_id}"
        client.post(f"{base}/draft")
        edited = client.post(f"{base}/draft", json={
            "override_markdown": "Refunds in 5 days. [NEEDS_VERIFICATION: refund speed]",
        })
        assert edited.json()["recommendation"]["draft"]["version"] == 2
        client.post(f"{base}/approve")

        response = client.post(f"{base}/publish")
        assert response.status_code == 409
        assert response.json()["error"] == "needs_verification"
        assert response.json()["missing_claims"] == ["refund speed"]

    def test_invalid_draft_payload(self, client):
        rec_id = _propose(client)
        response = client.post(f"/tenants/{DOMAIN}/recommendations/{rec_id}/draft", json={
            "payload": {
                "type": "FAQ",
                "title": "Returns",
                "slug": "returns",
                "target_url": "/pages/faq",
                "content": {"body_markdown": "   "},
            },
        })
        assert response.status_code == 422

    def test_no_action(self, client):
        rec_id = _propose(client, action="SKIP")
        response = client.post(f"/tenants/{DOMAIN}/recommendations/{rec_id}/draft")
        assert response.status_code == 409
        assert response.json()["error"] == "no_action"

    def test_dismiss_and_list(self, client):
        keep = _propose(client)
        drop = _propose(client, title="Gift cards")
        assert client.post(f"/tenants/{DOMAIN}/recommendations/{drop}/dismiss").status_code == 200

        listed = client.get(f"/tenants/{DOMAIN}/recommendations").json()["recommendations"]
        assert [r["id"] for r in listed] == [keep]
        assert client.get(f"/tenants/{DOMAIN}/recommendations?status=DRAFTED").json()["recommendations"] == []


class TestCampaignEndpoints:
    def test_preview(self, client):
        rule_set_id = _seed_campaign_audience(client)
        response = client.post(f"/tenants/{DOMAIN}/segments/preview", json={"rule_set_id": rule_set_id})
        assert response.status_code == 200
        snapshot = response.json()["snapshot"]
        assert snapshot["eligible"] == 3
        assert snapshot["reasons"] == {"rating_below_5": 1}

    def test_approval_gated_execution(self, client):
        rule_set_id = _seed_campaign_audience(client)
        planned = client.post(f"/tenants/{DOMAIN}/campaigns", json={
            "rule_set_id": rule_set_id,
            "requires_approval": True,
        }).json()["campaign"]
        base = f"/tenants/{DOMAIN}/campaigns/{planned['id']}"

        blocked = client.post(f"{base}/execute")
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "requires_approval"

        client.post(f"{base}/approve", json={"approver": "owner@shop.example"})
        executed = client.post(f"{base}/execute")
        assert executed.status_code == 200
        assert executed.json()["sent"] == 3
        assert executed.json()["campaign"]["status"] == "EXECUTED"

        again = client.post(f"{base}/execute")
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_state"

        sends = client.get(f"{base}?status=SENT").json()["send_receipts"]
        assert len(sends) == 3

    def test_inactive_rule_set(self, client):
        rule_set_id = _seed_campaign_audience(client)
        client.patch(f"/tenants/{DOMAIN}/rulesets/{rule_set_id}", json={"active": False})
        response = client.post(f"/tenants/{DOMAIN}/campaigns", json={"rule_set_id": rule_set_id})
        assert response.status_code == 409

    def test_unknown_rule_set(self, client):
        response = client.post(f"/tenants/{DOMAIN}/campaigns", json={"rule_set_id": "rs_missing"})
        assert response.status_code == 404


class TestReceiptEndpoints:
    def test_list_and_filter(self, client):
        _propose(client)
        client.post(f"/tenants/{DOMAIN}/trust/snapshots", json=_make_signals(60))

        everything = client.get(f"/tenants/{DOMAIN}/receipts").json()["receipts"]
        assert everything[0]["actor"] == "TRUST_ENGINE"

        content = client.get(f"/tenants/{DOMAIN}/receipts?actor=CONTENT_ENGINE").json()["receipts"]
        assert [r["summary"] for r in content] == ["Recommendation proposed"]

    def test_limit_clamped(self, client):
        for i in range(3):
            _propose(client, title=f"Question {i}")
        response = client.get(f"/tenants/{DOMAIN}/receipts?limit=0")
        assert response.status_code == 200
        assert len(response.json()["receipts"]) == 1
