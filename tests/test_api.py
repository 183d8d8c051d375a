import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from api.rest import create_app
from core.config import RollbackConfig, RolloutConfig, Settings
from core.services import build_services

SETTINGS = Settings(
    rollback=RollbackConfig(health_check_retries=1, health_check_interval_ms=0, substrate_retry_delay_ms=0),
    rollout=RolloutConfig(canary_traffic_increment=50, canary_promotion_delay_ms=0, blue_green_switch_delay_ms=0,
                          rolling_batch_delay_ms=0, health_check_timeout_ms=1, health_check_poll_ms=1),
)


@pytest_asyncio.fixture
async def services(session_factory, substrate):
    services = build_services(SETTINGS, session_factory, workload=substrate, traffic_router=substrate,
                              health_probe=substrate)
    yield services
    await services.shutdown()


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def version_ids(client):
    ids = []
    for version in ["1.0.0", "1.1.0"]:
        resp = await client.post("/api/versions", json={"model_name": "fraud-detector", "version": version})
        assert resp.status_code == 201
        ids.append(resp.json()["id"])
    return ids


async def deploy(client, services, deployment_payload, version_id, **kwargs):
    resp = await client.post("/api/deployments", json=deployment_payload(version_id, **kwargs),
                             headers={"X-User": "alice"})
    assert resp.status_code == 201, resp.text
    await services.rollout_orchestrator.join()
    return resp.json()


@pytest.mark.asyncio
async def test_create_and_read_deployment(client, services, version_ids, deployment_payload):
    resp = await client.post("/api/deployments", json=deployment_payload(version_ids[0]), headers={"X-User": "alice"})
    assert resp.status_code == 201
    created = resp.json()
    assert created["status"] == "pending"
    assert created["deployed_by"] == "alice"

    await services.rollout_orchestrator.join()
    resp = await client.get(f"/api/deployments/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"
    assert resp.json()["traffic_split"] == 100

    resp = await client.get("/api/deployments", params={"environment": "production", "status": "active"})
    assert [d["id"] for d in resp.json()] == [created["id"]]
    assert services.monitor.is_monitoring(created["id"])


@pytest.mark.asyncio
async def test_errors_use_error_body(client, version_ids, deployment_payload):
    resp = await client.get("/api/deployments/9999")
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"

    resp = await client.post("/api/deployments", json=deployment_payload(9999))
    assert resp.status_code == 404

    resp = await client.get("/api/deployments", params={"limit": 0})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_manual_status_follows_transitions(client, services, version_ids, deployment_payload):
    deployment = await deploy(client, services, deployment_payload, version_ids[0])
    resp = await client.put(f"/api/deployments/{deployment['id']}/status", json={"status": "terminated"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "terminated"
    assert not services.monitor.is_monitoring(deployment["id"])

    resp = await client.put(f"/api/deployments/{deployment['id']}/status", json={"status": "active"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_rollback_endpoints(client, services, version_ids, deployment_payload, substrate):
    prior = await deploy(client, services, deployment_payload, version_ids[0])
    current = await deploy(client, services, deployment_payload, version_ids[1])

    resp = await client.get(f"/api/deployments/{current['id']}/rollback-options")
    assert [d["id"] for d in resp.json()] == [prior["id"]]

    substrate.deploy_gate.clear()
    resp = await client.post(f"/api/deployments/{current['id']}/rollbacks",
                             json={"target_version_id": version_ids[0], "reason": "error spike"},
                             headers={"X-User": "bob"})
    assert resp.status_code == 202
    rollback = resp.json()
    assert rollback["status"] == "pending"
    assert rollback["initiated_by"] == "bob"

    resp = await client.post(f"/api/deployments/{current['id']}/rollbacks",
                             json={"target_version_id": version_ids[0], "reason": "again"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"

    substrate.deploy_gate.set()
    await services.rollback_orchestrator.join()
    resp = await client.get(f"/api/deployments/rollbacks/{rollback['id']}")
    assert resp.json()["status"] == "completed"
    resp = await client.get(f"/api/deployments/{current['id']}/rollbacks")
    assert [r["id"] for r in resp.json()] == [rollback["id"]]

    resp = await client.post(f"/api/deployments/rollbacks/{rollback['id']}/cancel")
    assert resp.json() == {"rollback_id": rollback["id"], "cancelled": False}
    assert (await client.get("/api/deployments/rollbacks/9999")).status_code == 404


@pytest.mark.asyncio
async def test_rollback_of_pending_deployment_is_rejected(client, services, version_ids, deployment_payload):
    deployment = await services.deployment_manager.create_deployment(deployment_payload(version_ids[1]), "alice")
    resp = await client.post(f"/api/deployments/{deployment.id}/rollbacks",
                             json={"target_version_id": version_ids[0], "reason": "too early"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_traffic_split_endpoints(client, services, version_ids, deployment_payload):
    deployment = await services.deployment_manager.create_deployment(deployment_payload(version_ids[0]), "alice")
    first = (await client.post(f"/api/deployments/{deployment.id}/traffic-splits", json={"percentage": 0})).json()
    second = (await client.post(f"/api/deployments/{deployment.id}/traffic-splits", json={"percentage": 100})).json()

    resp = await client.get(f"/api/deployments/{deployment.id}/traffic-splits")
    assert [s["id"] for s in resp.json()] == [second["id"], first["id"]]

    resp = await client.put(f"/api/deployments/traffic-splits/{first['id']}/complete")
    assert resp.json()["completed_at"] is not None
    resp = await client.post(f"/api/deployments/{deployment.id}/traffic-splits", json={"percentage": 150})
    assert resp.status_code == 422
    resp = await client.post("/api/deployments/9999/traffic-splits", json={"percentage": 10})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_metrics_alerts_and_health(client, services, version_ids, deployment_payload):
    deployment = await deploy(client, services, deployment_payload, version_ids[0])
    resp = await client.post(f"/api/deployments/{deployment['id']}/metrics", json={
        "availability": 99.0, "latency_p95": 150, "latency_p99": 300, "error_rate": 5.0, "request_count": 50,
    })
    assert resp.status_code == 201

    resp = await client.get(f"/api/deployments/{deployment['id']}/metrics", params={"granularity": "minute"})
    assert len(resp.json()) == 1
    assert resp.json()[0]["id"] is None

    alerts = await services.monitor.check_slos(deployment["id"])
    assert {a.type for a in alerts} == {"low_availability", "high_error_rate"}

    resp = await client.get(f"/api/deployments/{deployment['id']}/alerts", params={"acknowledged": False})
    assert len(resp.json()) == 2
    alert_id = resp.json()[0]["id"]
    assert (await client.put(f"/api/deployments/alerts/{alert_id}/acknowledge")).json()["acknowledged"] is True
    assert (await client.put(f"/api/deployments/alerts/{alert_id}/resolve")).json()["resolved_at"] is not None
    assert (await client.put("/api/deployments/alerts/9999/resolve")).status_code == 404

    resp = await client.get(f"/api/deployments/{deployment['id']}/health")
    assert resp.status_code == 200
    health = resp.json()
    assert health["active_alerts"] == 1
    assert health["health_score"] < 100


@pytest.mark.asyncio
async def test_monitoring_endpoints(client, services, version_ids, deployment_payload):
    deployment = await deploy(client, services, deployment_payload, version_ids[0])
    resp = await client.post(f"/api/deployments/{deployment['id']}/monitoring/stop")
    assert resp.json()["stopped"] is True
    resp = await client.post(f"/api/deployments/{deployment['id']}/monitoring/start")
    assert resp.json() == {"deployment_id": deployment["id"], "monitoring": True, "started": True}

    pending = await services.deployment_manager.create_deployment(deployment_payload(version_ids[0]), "alice")
    resp = await client.post(f"/api/deployments/{pending.id}/monitoring/start")
    assert resp.status_code == 409
