import asyncio
import pytest
from core.config import MonitoringConfig, RollbackConfig
from models import DeploymentStatus, RollbackStatus
from rollback_orchestrator import CANCELLED_MESSAGE, RollbackOrchestrator
from slo_monitor import SLOMonitor
from utils.exceptions import ConflictError, InvalidStateError, NotFoundError


FAST = RollbackConfig(health_check_retries=3, health_check_interval_ms=0, substrate_retries=1, substrate_retry_delay_ms=0)


class FakeMonitor:
    def __init__(self):
        self.stopped = []
        self.started = []

    async def stop_monitoring(self, deployment_id):
        self.stopped.append(deployment_id)
        return True

    async def start_monitoring(self, deployment_id, restored=False):
        self.started.append((deployment_id, restored))
        return True


@pytest.fixture
def orchestrator(manager, registry, substrate):
    return RollbackOrchestrator(manager, registry, substrate, substrate, substrate, FAST, monitor=FakeMonitor())


@pytest.mark.asyncio
async def test_successful_canary_rollback(orchestrator, manager, make_deployment, versions, substrate):
    deployment = await make_deployment(versions[1].id, strategy="canary")
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "error spike", "alice")
    # detached task는 아직 시작하지 않았다
    assert rollback.status == RollbackStatus.PENDING.value
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.ACTIVE.value

    await orchestrator.join()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.COMPLETED.value
    assert rollback.completed_at is not None
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.ROLLED_BACK.value

    assert [c for c in substrate.calls if c[0] in ("shift_traffic", "deploy_version")] == [
        ("shift_traffic", deployment.id, 0),
        ("deploy_version", deployment.id, versions[0].id),
        ("shift_traffic", deployment.id, 100),
    ]
    config = substrate.deploy_configs[0]
    assert config["version_id"] == versions[0].id
    assert config["version"] == versions[0].version
    assert config["artifact_uri"] == versions[0].artifact_uri
    assert "rollback_timestamp" in config
    assert config["replicas"] == 2

    splits = await manager.get_traffic_splits(deployment.id)
    assert [s.percentage for s in splits] == [100, 0]
    assert splits[1].completed_at is not None
    assert orchestrator.monitor.stopped == [deployment.id]
    assert orchestrator.monitor.started == [(deployment.id, True)]


@pytest.mark.asyncio
async def test_rolling_rollback_skips_traffic_shift(orchestrator, manager, make_deployment, versions, substrate):
    deployment = await make_deployment(versions[1].id, strategy="rolling")
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "regression", "alice")
    await orchestrator.join()
    assert (await manager.get_rollback(rollback.id)).status == RollbackStatus.COMPLETED.value
    assert substrate.count("shift_traffic") == 0
    assert await manager.get_traffic_splits(deployment.id) == []


@pytest.mark.asyncio
async def test_failed_deployment_can_be_rolled_back(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id, status=DeploymentStatus.FAILED)
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "rollout failed", "system")
    await orchestrator.join()
    assert (await manager.get_rollback(rollback.id)).status == RollbackStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_rolling_back_deployment_conflicts_without_new_row(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id, status=DeploymentStatus.ROLLING_BACK)
    with pytest.raises(ConflictError):
        await orchestrator.execute_rollback(deployment.id, versions[0].id, "again", "alice")
    assert await manager.get_rollback_operations(deployment.id) == []


@pytest.mark.asyncio
async def test_pending_deployment_is_invalid_state(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id, status=DeploymentStatus.PENDING)
    with pytest.raises(InvalidStateError):
        await orchestrator.execute_rollback(deployment.id, versions[0].id, "too early", "alice")
    assert await manager.get_rollback_operations(deployment.id) == []


@pytest.mark.asyncio
async def test_missing_target_version_creates_nothing(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id)
    with pytest.raises(NotFoundError):
        await orchestrator.execute_rollback(deployment.id, 9999, "bad", "alice")
    assert await manager.get_rollback_operations(deployment.id) == []


@pytest.mark.asyncio
async def test_missing_deployment_is_not_found(orchestrator, versions):
    with pytest.raises(NotFoundError):
        await orchestrator.execute_rollback(9999, versions[0].id, "bad", "alice")


@pytest.mark.asyncio
async def test_concurrent_requests_admit_one_rollback(orchestrator, manager, make_deployment, versions, substrate):
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id)
    results = await asyncio.gather(
        orchestrator.execute_rollback(deployment.id, versions[0].id, "first", "alice"),
        orchestrator.execute_rollback(deployment.id, versions[0].id, "second", "bob"),
        return_exceptions=True,
    )
    substrate.deploy_gate.set()
    await orchestrator.join()
    assert len([r for r in results if isinstance(r, ConflictError)]) == 1
    assert len(await manager.get_rollback_operations(deployment.id)) == 1


@pytest.mark.asyncio
async def test_verification_failure_marks_both_failed(manager, registry, make_deployment, versions, substrate):
    substrate.healthy = False
    orchestrator = RollbackOrchestrator(manager, registry, substrate, substrate, substrate, FAST)
    deployment = await make_deployment(versions[1].id)
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    await orchestrator.join()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.FAILED.value
    assert rollback.error_message == "Rollback verification failed"
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.FAILED.value
    assert substrate.count("check_health") == FAST.health_check_retries


@pytest.mark.asyncio
async def test_substrate_failure_is_retried_then_fails(manager, registry, make_deployment, versions, substrate):
    substrate.deploy_ok = False
    orchestrator = RollbackOrchestrator(manager, registry, substrate, substrate, substrate, FAST)
    deployment = await make_deployment(versions[1].id, strategy="rolling")
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    await orchestrator.join()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.FAILED.value
    assert "failed to deploy" in rollback.error_message
    assert substrate.count("deploy_version") == FAST.substrate_retries + 1
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_verify_success_on_first_attempt(orchestrator, substrate, monkeypatch):
    delays = []
    orig_sleep = asyncio.sleep
    async def fake_sleep(secs):
        delays.append(secs)
        await orig_sleep(0)
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)

    assert await orchestrator.verify_rollback_success(1, 7) is True
    assert substrate.count("check_health") == 1
    assert substrate.count("check_deployed_version") == 1
    assert delays == []


@pytest.mark.asyncio
async def test_verify_unhealthy_uses_every_retry(manager, registry, substrate, monkeypatch):
    delays = []
    orig_sleep = asyncio.sleep
    async def fake_sleep(secs):
        delays.append(secs)
        await orig_sleep(0)
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    substrate.healthy = False
    orchestrator = RollbackOrchestrator(manager, registry, substrate, substrate, substrate, RollbackConfig())

    assert await orchestrator.verify_rollback_success(1, 7) is False
    assert substrate.count("check_health") == 5
    assert substrate.count("check_deployed_version") == 0
    assert len(delays) == 4
    assert all(d >= 30 for d in delays)


@pytest.mark.asyncio
async def test_version_mismatch_fails_verification(orchestrator, substrate):
    substrate.version_matches = False
    assert await orchestrator.verify_rollback_success(1, 7) is False
    assert substrate.count("check_deployed_version") == FAST.health_check_retries


@pytest.mark.asyncio
async def test_cancel_terminal_operations_returns_false(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id)
    done = await manager.create_rollback(deployment.id, versions[0].id, "old", "alice")
    await manager.update_rollback_status(done.id, RollbackStatus.COMPLETED)
    failed = await manager.create_rollback(deployment.id, versions[0].id, "old", "alice")
    await manager.update_rollback_status(failed.id, RollbackStatus.FAILED, "boom")

    assert await orchestrator.cancel_rollback(done.id) is False
    assert await orchestrator.cancel_rollback(failed.id) is False
    assert await orchestrator.cancel_rollback(9999) is False
    assert (await manager.get_rollback(failed.id)).error_message == "boom"


@pytest.mark.asyncio
async def test_cancel_pending_rollback_stops_task(orchestrator, manager, make_deployment, versions, substrate):
    deployment = await make_deployment(versions[1].id)
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")

    assert await orchestrator.cancel_rollback(rollback.id) is True
    await orchestrator.join()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.FAILED.value
    assert rollback.error_message == CANCELLED_MESSAGE
    assert substrate.count("deploy_version") == 0
    # 아무 단계도 실행되지 않았으므로 deployment와 watch는 그대로
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.ACTIVE.value
    assert orchestrator.monitor.stopped == []


@pytest.mark.asyncio
async def test_cancel_before_start_keeps_monitoring(manager, registry, make_deployment, versions, substrate):
    orchestrator = RollbackOrchestrator(manager, registry, substrate, substrate, substrate, FAST)
    monitor = SLOMonitor(manager, orchestrator, MonitoringConfig())
    orchestrator.monitor = monitor
    deployment = await make_deployment(versions[1].id)
    await monitor.start_monitoring(deployment.id)

    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    assert await orchestrator.cancel_rollback(rollback.id) is True
    await orchestrator.join()

    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.ACTIVE.value
    assert monitor.is_monitoring(deployment.id)
    assert substrate.count("deploy_version") == 0
    await monitor.shutdown()


@pytest.mark.asyncio
async def test_cancel_mid_rollback_stops_monitoring(manager, registry, make_deployment, versions, substrate):
    orchestrator = RollbackOrchestrator(manager, registry, substrate, substrate, substrate, FAST)
    monitor = SLOMonitor(manager, orchestrator, MonitoringConfig())
    orchestrator.monitor = monitor
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id, strategy="rolling")
    await monitor.start_monitoring(deployment.id)

    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    while substrate.count("deploy_version") == 0:
        await asyncio.sleep(0.01)
    assert await orchestrator.cancel_rollback(rollback.id) is True
    substrate.deploy_gate.set()
    await orchestrator.join()

    deployment = await manager.get_deployment(deployment.id)
    assert deployment.status == DeploymentStatus.FAILED.value
    # FAILED인데 watch가 남아 있으면 안 된다
    assert not monitor.is_monitoring(deployment.id)
    assert substrate.count("check_health") == 0
    await monitor.shutdown()


@pytest.mark.asyncio
async def test_terminated_before_start_stays_terminated(orchestrator, manager, make_deployment, versions):
    deployment = await make_deployment(versions[1].id)
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    await manager.update_deployment_status(deployment.id, DeploymentStatus.TERMINATED)
    await orchestrator.join()

    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.TERMINATED.value
    assert (await manager.get_rollback(rollback.id)).status == RollbackStatus.FAILED.value
    assert orchestrator.monitor.started == []


@pytest.mark.asyncio
async def test_status_changed_during_rollback_is_not_overwritten(orchestrator, manager, make_deployment, versions,
                                                                 substrate):
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id, strategy="rolling")
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    while substrate.count("deploy_version") == 0:
        await asyncio.sleep(0.01)
    await manager.update_deployment_status(deployment.id, DeploymentStatus.TERMINATED)
    substrate.deploy_gate.set()
    await orchestrator.join()

    # 검증은 통과했지만 ROLLED_BACK으로 덮어쓰지 않는다
    assert substrate.count("check_health") == 1
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.TERMINATED.value
    assert (await manager.get_rollback(rollback.id)).status == RollbackStatus.FAILED.value
    assert orchestrator.monitor.started == []


@pytest.mark.asyncio
async def test_admission_locks_are_released(orchestrator, manager, make_deployment, versions, substrate):
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id)
    await asyncio.gather(
        orchestrator.execute_rollback(deployment.id, versions[0].id, "first", "alice"),
        orchestrator.execute_rollback(deployment.id, versions[0].id, "second", "bob"),
        return_exceptions=True,
    )
    with pytest.raises(NotFoundError):
        await orchestrator.execute_rollback(9999, versions[0].id, "missing", "alice")
    assert orchestrator._admission_locks == {}
    substrate.deploy_gate.set()
    await orchestrator.join()


@pytest.mark.asyncio
async def test_cancel_in_progress_rollback(orchestrator, manager, make_deployment, versions, substrate):
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id, strategy="canary")
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")

    # deploy_version 안에서 멈출 때까지 진행
    while substrate.count("deploy_version") == 0:
        await asyncio.sleep(0.01)
    assert (await manager.get_rollback(rollback.id)).status == RollbackStatus.IN_PROGRESS.value
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.ROLLING_BACK.value

    assert await orchestrator.cancel_rollback(rollback.id) is True
    substrate.deploy_gate.set()
    await orchestrator.join()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.FAILED.value
    assert rollback.error_message == CANCELLED_MESSAGE
    # 다음 checkpoint에서 멈춤: 트래픽 복원 없음
    assert ("shift_traffic", deployment.id, 100) not in substrate.calls
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_shutdown_leaves_no_running_operation(orchestrator, manager, make_deployment, versions, substrate):
    substrate.deploy_gate.clear()
    deployment = await make_deployment(versions[1].id)
    rollback = await orchestrator.execute_rollback(deployment.id, versions[0].id, "bad", "alice")
    while substrate.count("deploy_version") == 0:
        await asyncio.sleep(0.01)

    await orchestrator.shutdown()

    rollback = await manager.get_rollback(rollback.id)
    assert rollback.status == RollbackStatus.FAILED.value
    assert (await manager.get_deployment(deployment.id)).status == DeploymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_one_click_options(orchestrator, make_deployment, versions):
    target = await make_deployment(versions[2].id, environment="production")
    others = [await make_deployment(versions[i % 2].id, environment="production") for i in range(7)]
    await make_deployment(versions[0].id, environment="staging")
    await make_deployment(versions[0].id, environment="production", status=DeploymentStatus.FAILED)

    options = await orchestrator.get_one_click_rollback_options(target.id)
    assert len(options) == 5
    assert target.id not in [o.id for o in options]
    assert [o.id for o in options] == [d.id for d in reversed(others)][:5]
    assert all(o.environment == "production" and o.status == "active" for o in options)

    newest = others[-1]
    options = await orchestrator.get_one_click_rollback_options(newest.id)
    assert newest.id not in [o.id for o in options]
    assert len(options) == 5


@pytest.mark.asyncio
async def test_one_click_options_missing_deployment(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.get_one_click_rollback_options(9999)
