from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    AppsV1Api,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


@dataclass(frozen=True)
class ReconcileKey:
    """Namespace/name identity of a Deployment; the unit of work-queue dedup."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def for_object(cls, obj: Any) -> ReconcileKey:
        metadata = getattr(obj, "metadata", None)
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
        )


class ObjectNotFound(LookupError):
    """Raised when the requested object no longer exists in the cluster."""

    def __init__(self, key: ReconcileKey) -> None:
        super().__init__(f"{key} not found")
        self.key = key


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


class ApiDeploymentReader:
    """Point lookup of Deployments by key."""

    def __init__(self, apps_api: AppsV1Api) -> None:
        self.apps_api = apps_api

    def get(self, key: ReconcileKey) -> Any:
        """Return the Deployment for *key*.

        Raises :class:`ObjectNotFound` on ``404``; any other
        :class:`ApiException` is propagated so the caller can retry.
        """
        try:
            return self.apps_api.read_namespaced_deployment(
                name=key.name,
                namespace=key.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise ObjectNotFound(key) from exc
            raise


class ApiReplicaSetLister:
    def __init__(self, apps_api: AppsV1Api) -> None:
        self.apps_api = apps_api

    def list(self, namespace: str, label_selector: str | None = None) -> list[Any]:
        kwargs: dict[str, Any] = {"namespace": namespace}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return list(self.apps_api.list_namespaced_replica_set(**kwargs).items or [])


class ApiPodLister:
    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def list(self, namespace: str, label_selector: str | None = None) -> list[Any]:
        kwargs: dict[str, Any] = {"namespace": namespace}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return list(self.core_api.list_namespaced_pod(**kwargs).items or [])


class KubeEventRecorder:
    """Records core/v1 Events against Deployments.

    Every event is logged first and then written to the API server.  Writing
    is best-effort: a failed ``create_namespaced_event`` call is logged and
    swallowed so event recording can never fail a reconciliation.
    """

    def __init__(self, core_api: CoreV1Api, component: str) -> None:
        self.core_api = core_api
        self.component = component

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or "default"
        name = getattr(metadata, "name", None) or ""
        LOGGER.info(
            "Event(%s/%s): type=%s reason=%s message=%s",
            namespace,
            name,
            event_type,
            reason,
            message,
        )

        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(generate_name=f"{name}.", namespace=namespace),
            involved_object=V1ObjectReference(
                api_version=getattr(obj, "api_version", None) or "apps/v1",
                kind=getattr(obj, "kind", None) or "Deployment",
                name=name,
                namespace=namespace,
                uid=getattr(metadata, "uid", None),
                resource_version=getattr(metadata, "resource_version", None),
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except Exception:
            LOGGER.warning(
                "Failed to record event %s for %s/%s", reason, namespace, name, exc_info=True
            )
