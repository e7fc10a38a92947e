from __future__ import annotations

import queue as stdlib_queue
import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from deployment_controller.src.config import ControllerConfig
from deployment_controller.src.controller import (
    DeploymentController,
    DeploymentReconciler,
    build_controller,
    build_controller_from_env,
    runtime_version,
)
from deployment_controller.src.gate import ContextBuilder, DeploymentContext, Outcome
from deployment_controller.src.kube import (
    ApiDeploymentReader,
    KubeEventRecorder,
    ObjectNotFound,
    ReconcileKey,
)
from deployment_controller.src.strategy import DEPLOYMENT_STRATEGY_ANNOTATION

KEY = ReconcileKey("apps", "web")


def make_deployment(strategy: str | None = "{}", paused: bool = True) -> SimpleNamespace:
    annotations = {} if strategy is None else {DEPLOYMENT_STRATEGY_ANNOTATION: strategy}
    return SimpleNamespace(
        metadata=SimpleNamespace(name="web", namespace="apps", annotations=annotations),
        spec=SimpleNamespace(paused=paused),
    )


class FakeReader:
    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[ReconcileKey] = []

    def get(self, key: ReconcileKey) -> Any:
        self.calls.append(key)
        if self.error is not None:
            raise self.error
        return self.result


class FakeSyncEngine:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.contexts: list[DeploymentContext] = []

    def sync(self, context: DeploymentContext) -> None:
        self.contexts.append(context)
        if self.error is not None:
            raise self.error


class FakeQueue:
    """Hands out pre-seeded keys, then reports shutdown once drained."""

    def __init__(self, keys: list[ReconcileKey] | None = None) -> None:
        self.pending = list(keys or [])
        self.added: list[ReconcileKey] = []
        self.done_keys: list[ReconcileKey] = []
        self.rate_limited: list[ReconcileKey] = []
        self.forgotten: list[ReconcileKey] = []
        self.shutdown_calls = 0

    def add(self, key: ReconcileKey) -> None:
        self.added.append(key)

    def get(self) -> tuple[ReconcileKey | None, bool]:
        if not self.pending:
            return None, True
        return self.pending.pop(0), False

    def done(self, key: ReconcileKey) -> None:
        self.done_keys.append(key)

    def add_rate_limited(self, key: ReconcileKey) -> None:
        self.rate_limited.append(key)

    def forget(self, key: ReconcileKey) -> None:
        self.forgotten.append(key)

    def shut_down(self) -> None:
        self.shutdown_calls += 1


class BlockingQueue(FakeQueue):
    """Blocks in ``get`` like a real work queue until keys arrive or it is shut down."""

    _SHUTDOWN = object()

    def __init__(self) -> None:
        super().__init__()
        self._items: stdlib_queue.Queue[Any] = stdlib_queue.Queue()
        self._lock = threading.Lock()

    def add(self, key: ReconcileKey) -> None:
        self._items.put(key)

    def get(self) -> tuple[ReconcileKey | None, bool]:
        item = self._items.get()
        if item is self._SHUTDOWN:
            self._items.put(item)
            return None, True
        return item, False

    def done(self, key: ReconcileKey) -> None:
        with self._lock:
            self.done_keys.append(key)

    def forget(self, key: ReconcileKey) -> None:
        with self._lock:
            self.forgotten.append(key)

    def shut_down(self) -> None:
        self.shutdown_calls += 1
        self._items.put(self._SHUTDOWN)


def _make_reconciler(
    reader: FakeReader, sync_engine: FakeSyncEngine | None = None
) -> tuple[DeploymentReconciler, MagicMock, FakeSyncEngine]:
    engine = sync_engine or FakeSyncEngine()
    real_builder = ContextBuilder(
        apps_api=MagicMock(),
        replica_set_lister=MagicMock(),
        pod_lister=MagicMock(),
        event_recorder=MagicMock(),
    )
    builder = MagicMock(wraps=real_builder)
    reconciler = DeploymentReconciler(reader=reader, context_builder=builder, sync_engine=engine)
    return reconciler, builder, engine


# ---------------------------------------------------------------------------
# Reconcile entry point
# ---------------------------------------------------------------------------


def test_not_found_terminates_without_gate() -> None:
    reconciler, builder, engine = _make_reconciler(FakeReader(error=ObjectNotFound(KEY)))

    assert reconciler.reconcile(KEY) is Outcome.SKIP_NOT_FOUND
    builder.build.assert_not_called()
    assert engine.contexts == []


def test_transient_fetch_error_propagates_without_gate() -> None:
    error = ApiException(status=500, reason="etcd timeout")
    reconciler, builder, engine = _make_reconciler(FakeReader(error=error))

    with pytest.raises(ApiException) as exc_info:
        reconciler.reconcile(KEY)

    assert exc_info.value is error
    builder.build.assert_not_called()
    assert engine.contexts == []


@pytest.mark.parametrize(
    ("deployment", "expected"),
    [
        (make_deployment(strategy=None), Outcome.SKIP_INELIGIBLE),
        (make_deployment(paused=False), Outcome.SKIP_INELIGIBLE),
        (make_deployment(strategy='{"rollingStyle": "canary"}'), Outcome.SKIP_WRONG_STYLE),
        (make_deployment(strategy='{"rollingStyle": "Canary"}'), Outcome.SKIP_WRONG_STYLE),
        (make_deployment(strategy="{{{"), Outcome.SKIP_UNPARSEABLE),
    ],
)
def test_skips_never_reach_sync_engine(deployment: SimpleNamespace, expected: Outcome) -> None:
    reconciler, _, engine = _make_reconciler(FakeReader(result=deployment))

    assert reconciler.reconcile(KEY) is expected
    assert engine.contexts == []


def test_eligible_deployment_is_dispatched_once() -> None:
    deployment = make_deployment(
        strategy='{"rollingStyle": "Partition", "rollingUpdate": {"maxSurge": "25%"}}'
    )
    reconciler, _, engine = _make_reconciler(FakeReader(result=deployment))

    assert reconciler.reconcile(KEY) is Outcome.DISPATCHED
    assert len(engine.contexts) == 1
    context = engine.contexts[0]
    assert context.deployment is deployment
    assert context.strategy.rolling_update.max_surge == "25%"


def test_rolling_style_deployment_is_dispatched_once() -> None:
    deployment = make_deployment(
        strategy='{"rollingStyle": "rolling", "rollingUpdate": {"maxSurge": "25%"}}'
    )
    reconciler, _, engine = _make_reconciler(FakeReader(result=deployment))

    assert reconciler.reconcile(KEY) is Outcome.DISPATCHED
    assert len(engine.contexts) == 1
    assert engine.contexts[0].strategy.style == "rolling"
    assert engine.contexts[0].strategy.rolling_update.max_surge == "25%"


def test_sync_error_propagates_verbatim() -> None:
    error = RuntimeError("conflict updating replica set")
    reconciler, _, engine = _make_reconciler(
        FakeReader(result=make_deployment()), FakeSyncEngine(error=error)
    )

    with pytest.raises(RuntimeError) as exc_info:
        reconciler.reconcile(KEY)

    assert exc_info.value is error
    assert len(engine.contexts) == 1


def test_reconcile_refetches_on_every_call_and_is_stable() -> None:
    reader = FakeReader(result=make_deployment())
    reconciler, _, engine = _make_reconciler(reader)

    first = reconciler.reconcile(KEY)
    second = reconciler.reconcile(KEY)

    assert first is second is Outcome.DISPATCHED
    assert reader.calls == [KEY, KEY]
    assert engine.contexts[0] is not engine.contexts[1]


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


def test_process_next_item_forgets_key_on_success() -> None:
    reconciler, _, _ = _make_reconciler(FakeReader(result=make_deployment()))
    queue = FakeQueue([KEY])
    controller = DeploymentController(reconciler=reconciler, queue=queue)

    assert controller.process_next_item() is True
    assert queue.forgotten == [KEY]
    assert queue.rate_limited == []
    assert queue.done_keys == [KEY]


def test_process_next_item_treats_skips_as_success() -> None:
    reconciler, _, _ = _make_reconciler(FakeReader(result=make_deployment(strategy="bad")))
    queue = FakeQueue([KEY])
    controller = DeploymentController(reconciler=reconciler, queue=queue)

    controller.process_next_item()

    assert queue.forgotten == [KEY]
    assert queue.rate_limited == []


def test_process_next_item_requeues_with_backoff_on_failure() -> None:
    reconciler, _, _ = _make_reconciler(
        FakeReader(result=make_deployment()), FakeSyncEngine(error=RuntimeError("boom"))
    )
    queue = FakeQueue([KEY])
    controller = DeploymentController(reconciler=reconciler, queue=queue)

    assert controller.process_next_item() is True
    assert queue.rate_limited == [KEY]
    assert queue.forgotten == []
    assert queue.done_keys == [KEY]


def test_process_next_item_returns_false_on_shutdown() -> None:
    reconciler, _, _ = _make_reconciler(FakeReader(result=make_deployment()))
    controller = DeploymentController(reconciler=reconciler, queue=FakeQueue())

    assert controller.process_next_item() is False


def test_controller_rejects_empty_pool() -> None:
    reconciler, _, _ = _make_reconciler(FakeReader())

    with pytest.raises(ValueError, match="workers"):
        DeploymentController(reconciler=reconciler, queue=FakeQueue(), workers=0)


def test_workers_drain_queue_and_stop() -> None:
    reader = FakeReader(result=make_deployment())
    reconciler, _, engine = _make_reconciler(reader)
    queue = BlockingQueue()
    controller = DeploymentController(
        reconciler=reconciler, queue=queue, workers=3, stop_timeout_seconds=5
    )
    keys = [ReconcileKey("apps", f"web-{index}") for index in range(6)]

    controller.start()
    for key in keys:
        queue.add(key)

    waiter = threading.Event()
    for _ in range(200):
        if len(queue.done_keys) == len(keys):
            break
        waiter.wait(0.01)
    controller.stop()

    assert sorted(queue.done_keys, key=str) == sorted(keys, key=str)
    assert len(engine.contexts) == len(keys)
    assert queue.shutdown_calls == 1
    assert controller._threads == []


def test_start_twice_raises() -> None:
    reconciler, _, _ = _make_reconciler(FakeReader())
    queue = BlockingQueue()
    controller = DeploymentController(reconciler=reconciler, queue=queue, workers=1)

    controller.start()
    try:
        with pytest.raises(RuntimeError, match="already started"):
            controller.start()
    finally:
        controller.stop()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def test_build_controller_returns_none_when_gate_disabled(
    caplog: pytest.LogCaptureFixture,
) -> None:
    result = build_controller(
        config=ControllerConfig(gate_enabled=False),
        apps_api=MagicMock(),
        core_api=MagicMock(),
        queue=FakeQueue(),
        sync_engine=FakeSyncEngine(),
    )

    assert result is None
    assert "Advanced deployment controller is disabled" in caplog.text


def test_build_controller_wires_api_backed_collaborators() -> None:
    apps_api = MagicMock()
    core_api = MagicMock()
    queue = FakeQueue()

    controller = build_controller(
        config=ControllerConfig(workers=5, controller_name="adc"),
        apps_api=apps_api,
        core_api=core_api,
        queue=queue,
        sync_engine=FakeSyncEngine(),
    )

    assert controller is not None
    assert controller.workers == 5
    assert controller.queue is queue
    assert isinstance(controller.reconciler.reader, ApiDeploymentReader)
    recorder = controller.reconciler.context_builder.event_recorder
    assert isinstance(recorder, KubeEventRecorder)
    assert recorder.component == "adc"


def test_build_controller_from_env_reads_worker_count(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOYMENT_WORKERS", "7")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    configure = MagicMock()
    monkeypatch.setattr("deployment_controller.src.controller.configure_logging", configure)

    controller = build_controller_from_env(
        apps_api=MagicMock(),
        core_api=MagicMock(),
        queue=FakeQueue(),
        sync_engine=FakeSyncEngine(),
    )

    assert controller is not None
    assert controller.workers == 7
    configure.assert_called_once_with("DEBUG")


def test_build_controller_from_env_honours_feature_gate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADVANCED_DEPLOYMENT_GATE", "false")
    monkeypatch.setattr("deployment_controller.src.controller.configure_logging", MagicMock())

    controller = build_controller_from_env(
        apps_api=MagicMock(),
        core_api=MagicMock(),
        queue=FakeQueue(),
        sync_engine=FakeSyncEngine(),
    )

    assert controller is None


def test_process_next_item_records_outcome_metric() -> None:
    from prometheus_client import REGISTRY

    def _count() -> float:
        return REGISTRY.get_sample_value(
            "advanced_deployment_reconcile_total", {"outcome": "skip_wrong_style"}
        ) or 0.0

    reconciler, _, _ = _make_reconciler(
        FakeReader(result=make_deployment(strategy='{"rollingStyle": "Canary"}'))
    )
    controller = DeploymentController(reconciler=reconciler, queue=FakeQueue([KEY]))
    before = _count()

    controller.process_next_item()

    assert _count() == before + 1


def test_runtime_version_reads_installed_distribution(monkeypatch: pytest.MonkeyPatch) -> None:
    lookup = MagicMock(return_value="1.4.2")
    monkeypatch.setattr("deployment_controller.src.controller.version", lookup)

    assert runtime_version() == "1.4.2"
    lookup.assert_called_once_with("advanced-deployment-controller")


def test_runtime_version_falls_back_when_not_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    from importlib.metadata import PackageNotFoundError

    monkeypatch.setattr(
        "deployment_controller.src.controller.version",
        MagicMock(side_effect=PackageNotFoundError("advanced-deployment-controller")),
    )

    assert runtime_version() == "unknown"
