"""
HTTP tests for the /loyalty and /health routers.
"""
from dataclasses import replace

from fastapi.testclient import TestClient

from apps.backend.main import app
from apps.backend.services.loyalty.errors import ConcurrentModificationRetry
from apps.backend.services.loyalty.loyalty_repository import InMemoryLoyaltyRepository
from apps.backend.services.loyalty.loyalty_service import LoyaltyService
from apps.backend.services.loyalty.service_factory import get_loyalty_service


def _register(client, cid="c1"):
    res = client.post("/loyalty/customers", json={"customer_id": cid, "name": "Sara", "birthday": "1990-05-04"})
    assert res.status_code == 200
    return cid


def test_register_and_details(client):
    cid = _register(client)

    res = client.get(f"/loyalty/customers/{cid}")

    body = res.json()
    assert res.status_code == 200
    assert body["ok"] is True
    assert body["data"]["customer"]["birthday"] == "1990-05-04"
    assert body["data"]["loyalty"]["tier_level"] == "BRONZE"


def test_earn_redeem_and_replay(client):
    cid = _register(client)

    assert client.post(f"/loyalty/customers/{cid}/points/add", json={"points": 120}).status_code == 200
    res = client.post(f"/loyalty/customers/{cid}/points/redeem", json={"points_to_redeem": 50})
    assert res.json()["data"]["loyalty"]["current_points"] == 70

    replay = client.get(f"/loyalty/customers/{cid}/replay").json()
    assert replay["data"]["points_balance"] == 70


def test_zero_redeem_is_invalid_amount(client):
    cid = _register(client)

    res = client.post(f"/loyalty/customers/{cid}/points/redeem", json={"points_to_redeem": 0})

    assert res.status_code == 400
    assert res.json() == {
        "ok": False,
        "error": "invalid_amount",
        "message": "points_to_redeem must be a positive integer",
        "details": {"points_to_redeem": 0},
    }


def test_error_envelopes(client):
    cid = _register(client)

    missing = client.post("/loyalty/customers/ghost/points/add", json={"points": 5})
    assert missing.status_code == 404
    assert missing.json()["error"] == "unknown_customer"

    overdraw = client.post(f"/loyalty/customers/{cid}/points/redeem", json={"points_to_redeem": 5})
    assert overdraw.status_code == 400
    assert overdraw.json()["error"] == "insufficient_points"

    bad_rule = client.post(
        "/loyalty/custom-segments",
        json={"name": "Broken", "rules": [{"field": "lifetimeSpent", "operator": "like", "value": 1}]},
    )
    assert bad_rule.status_code == 422
    assert bad_rule.json()["details"]["path"] == "rules[0]"

    no_pending = client.post(f"/loyalty/customers/{cid}/tier/confirm", json={})
    assert no_pending.status_code == 404


def test_visit_statistics_and_segments(client):
    cid = _register(client)
    visit = client.post(f"/loyalty/customers/{cid}/visits", json={"amount": 2_500_000, "order_reference": "o-1"})
    assert visit.json()["data"]["points_earned"] == 2500

    stats = client.get("/loyalty/statistics").json()["data"]
    assert stats["active_points"] == 2500

    txns = client.get("/loyalty/transactions", params={"customer_id": cid}).json()["data"]
    assert txns["pagination"]["total"] == 1

    created = client.post(
        "/loyalty/custom-segments",
        json={"name": "Big", "rules": [{"field": "lifetimeSpent", "operator": "greater", "value": 1_000_000}]},
    )
    assert created.status_code == 201
    assert created.json()["data"]["customer_count"] == 1

    assert client.post("/loyalty/segments/update").json()["data"]["total_customers"] == 1
    listed = client.get("/loyalty/segments/regular/customers").json()["data"]
    assert listed["pagination"]["total"] == 1


def test_health_score_routes(client):
    cid = _register(client)

    score = client.get(f"/loyalty/customers/{cid}/health").json()["data"]
    assert score["health_level"] == "POOR"

    alerts = client.get("/loyalty/health-scores/alerts").json()["data"]
    assert alerts[0]["customer_id"] == cid

    batch = client.post("/loyalty/health-scores/batch", json={"customer_ids": [cid, "ghost"]}).json()["data"]
    assert batch["missing"] == ["ghost"]


def test_health_probe(client, repo):
    cid = _register(client)
    client.post(f"/loyalty/customers/{cid}/points/add", json={"points": 10})

    assert client.get("/health").json() == {"ok": True}
    assert client.get("/health/loyalty").status_code == 200

    account = repo.accounts[cid]
    repo.accounts[cid] = replace(account, current_points=99)
    res = client.get("/health/loyalty")
    assert res.status_code == 503
    assert res.json()["ledger"]["inconsistent"] == [cid]


class AlwaysConflicting(InMemoryLoyaltyRepository):
    async def commit_write(self, account, expected_version, transaction=None, visit=None):
        raise ConcurrentModificationRetry(account.customer_id, expected_version, expected_version + 1)


def test_busy_account_returns_503_with_retry_after():
    service = LoyaltyService(AlwaysConflicting(), retry_attempts=2, retry_base_delay=0)
    app.dependency_overrides[get_loyalty_service] = lambda: service
    try:
        with TestClient(app) as client:
            _register(client)
            res = client.post("/loyalty/customers/c1/points/add", json={"points": 5})
    finally:
        app.dependency_overrides.clear()

    assert res.status_code == 503
    assert res.headers["retry-after"] == "1"
    assert res.json()["error"] == "retry_later"
