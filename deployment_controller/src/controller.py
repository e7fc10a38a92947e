from __future__ import annotations

import logging
import threading
import time
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Protocol

from deployment_controller.src.config import ControllerConfig, load_config
from deployment_controller.src.gate import ContextBuilder, DeploymentContext, Outcome
from deployment_controller.src.kube import (
    ApiDeploymentReader,
    ApiPodLister,
    ApiReplicaSetLister,
    KubeEventRecorder,
    ObjectNotFound,
    ReconcileKey,
)
from deployment_controller.src.logs import configure_logging
from deployment_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DISTRIBUTION_NAME = "advanced-deployment-controller"


def runtime_version() -> str:
    """Return the installed distribution version, or ``"unknown"`` when running from a source tree."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "unknown"


class WorkQueue(Protocol):
    """Deduplicating, rate-limited queue of reconcile keys.

    Implementations guarantee that a key added while already pending is
    collapsed into the pending entry, and that a key handed out by ``get`` is
    not handed to another worker until ``done`` is called for it.
    """

    def add(self, key: ReconcileKey) -> None: ...

    def get(self) -> tuple[ReconcileKey | None, bool]: ...

    def done(self, key: ReconcileKey) -> None: ...

    def add_rate_limited(self, key: ReconcileKey) -> None: ...

    def forget(self, key: ReconcileKey) -> None: ...

    def shut_down(self) -> None: ...


class SyncEngine(Protocol):
    def sync(self, context: DeploymentContext) -> None: ...


class DeploymentReconciler:
    """Per-key reconcile entry point.

    Always re-reads the Deployment instead of trusting anything captured when
    the key was enqueued, since the watch that produced the key may be stale.
    Only fetch failures and sync failures escape as exceptions; every other
    outcome is returned as an :class:`Outcome`.
    """

    def __init__(
        self, reader: Any, context_builder: ContextBuilder, sync_engine: SyncEngine
    ) -> None:
        self.reader = reader
        self.context_builder = context_builder
        self.sync_engine = sync_engine

    def reconcile(self, key: ReconcileKey) -> Outcome:
        try:
            deployment = self.reader.get(key)
        except ObjectNotFound:
            # Dependents are garbage collected by the cluster.
            LOGGER.debug("Deployment %s not found, nothing to do", key)
            return Outcome.SKIP_NOT_FOUND
        except Exception:
            METRICS.reconcile_errors_total.labels(stage="fetch").inc()
            raise

        result = self.context_builder.build(deployment)
        if result.context is None:
            return result.outcome

        try:
            self.sync_engine.sync(result.context)
        except Exception:
            METRICS.reconcile_errors_total.labels(stage="sync").inc()
            raise
        return Outcome.DISPATCHED


class DeploymentController:
    """Fixed-size pool of worker threads draining the reconcile queue.

    Each worker blocks on ``queue.get()``, reconciles the key synchronously
    and marks it done.  A successful reconcile clears the key's retry history
    with ``forget``; a failed one is handed back through
    ``add_rate_limited`` so the queue's backoff decides when it runs again.
    """

    def __init__(
        self,
        reconciler: DeploymentReconciler,
        queue: WorkQueue,
        workers: int = 3,
        stop_timeout_seconds: float = 30.0,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.reconciler = reconciler
        self.queue = queue
        self.workers = workers
        self.stop_timeout_seconds = stop_timeout_seconds
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def process_next_item(self) -> bool:
        """Process one key from the queue.  Returns False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        if key is None:
            return True

        METRICS.busy_workers.inc()
        started = time.monotonic()
        try:
            outcome = self.reconciler.reconcile(key)
        except Exception:
            LOGGER.exception("Error syncing deployment %s, requeuing", key)
            self.queue.add_rate_limited(key)
        else:
            METRICS.reconcile_total.labels(outcome=outcome.value).inc()
            self.queue.forget(key)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            METRICS.busy_workers.dec()
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next_item():
            pass

    def start(self) -> None:
        with self._lock:
            if self._threads:
                raise RuntimeError("controller already started")
            LOGGER.info("Starting advanced deployment controller with %d workers", self.workers)
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run_worker,
                    name=f"deployment-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)

    def stop(self) -> None:
        """Shut down the queue and wait for in-flight reconciles to finish."""
        with self._lock:
            self.queue.shut_down()
            deadline = time.monotonic() + self.stop_timeout_seconds
            for thread in self._threads:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
            alive = [thread.name for thread in self._threads if thread.is_alive()]
            if alive:
                LOGGER.error(
                    "Workers did not stop within %ss: %s",
                    self.stop_timeout_seconds,
                    ", ".join(alive),
                )
            self._threads = []
            LOGGER.info("Advanced deployment controller stopped")


def build_controller(
    config: ControllerConfig,
    apps_api: Any,
    core_api: Any,
    queue: WorkQueue,
    sync_engine: SyncEngine,
) -> DeploymentController | None:
    """Wire the reconciler and worker pool, or return None when the gate is disabled."""
    if not config.gate_enabled:
        LOGGER.warning("Advanced deployment controller is disabled")
        return None

    context_builder = ContextBuilder(
        apps_api=apps_api,
        replica_set_lister=ApiReplicaSetLister(apps_api),
        pod_lister=ApiPodLister(core_api),
        event_recorder=KubeEventRecorder(core_api, component=config.controller_name),
    )
    reconciler = DeploymentReconciler(
        reader=ApiDeploymentReader(apps_api),
        context_builder=context_builder,
        sync_engine=sync_engine,
    )
    return DeploymentController(reconciler=reconciler, queue=queue, workers=config.workers)


def build_controller_from_env(
    apps_api: Any,
    core_api: Any,
    queue: WorkQueue,
    sync_engine: SyncEngine,
) -> DeploymentController | None:
    """Construct a :class:`DeploymentController` from environment variables.

    Also installs JSON logging at ``LOG_LEVEL`` and publishes build info.
    See :func:`deployment_controller.src.config.load_config` for the
    variables read.
    """
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info({"version": runtime_version(), "controller": config.controller_name})
    return build_controller(
        config=config,
        apps_api=apps_api,
        core_api=core_api,
        queue=queue,
        sync_engine=sync_engine,
    )
