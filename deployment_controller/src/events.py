from __future__ import annotations

import logging
from typing import Any, Protocol

from deployment_controller.src.kube import ReconcileKey
from deployment_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

OWNER_API_GROUP = "apps"
OWNER_KIND = "Deployment"


class Enqueuer(Protocol):
    def add(self, key: ReconcileKey) -> None: ...


def _metadata(obj: Any) -> Any:
    return getattr(obj, "metadata", None)


def _annotations(obj: Any) -> dict[str, str]:
    return dict(getattr(_metadata(obj), "annotations", None) or {})


def deployment_update_needs_reconcile(old: Any, new: Any) -> bool:
    """Decide whether a Deployment update event warrants a reconciliation.

    First match wins:

    1. ``metadata.generation`` changed (a spec edit), or the deletion
       timestamp went from unset to set.
    2. The annotation maps differ in size or in any key/value pair.  The
       rollout strategy lives in annotations, so annotation-only edits must
       still reconcile.

    Anything else (status writes, label churn, resourceVersion bumps) is
    suppressed.
    """
    old_meta = _metadata(old)
    new_meta = _metadata(new)

    if getattr(old_meta, "generation", None) != getattr(new_meta, "generation", None):
        return True
    if (
        getattr(old_meta, "deletion_timestamp", None) is None
        and getattr(new_meta, "deletion_timestamp", None) is not None
    ):
        return True

    old_annotations = _annotations(old)
    new_annotations = _annotations(new)
    return len(old_annotations) != len(new_annotations) or old_annotations != new_annotations


def controller_owner_key(obj: Any) -> ReconcileKey | None:
    """Return the key of the Deployment that controls *obj*, if any.

    Only the owner reference flagged ``controller=True`` is considered, and
    only when it names an ``apps`` Deployment.
    """
    metadata = _metadata(obj)
    if metadata is None:
        return None
    for ref in getattr(metadata, "owner_references", None) or []:
        if not getattr(ref, "controller", False):
            continue
        api_version = getattr(ref, "api_version", None) or ""
        group = api_version.split("/", 1)[0] if "/" in api_version else ""
        if getattr(ref, "kind", None) != OWNER_KIND or group != OWNER_API_GROUP:
            return None
        name = getattr(ref, "name", None)
        if not name:
            return None
        return ReconcileKey(namespace=getattr(metadata, "namespace", None) or "", name=name)
    return None


class DeploymentEventHandler:
    """Enqueues Deployments on create/delete and on meaningful updates."""

    def __init__(self, queue: Enqueuer) -> None:
        self.queue = queue

    def _enqueue(self, obj: Any, event: str) -> None:
        key = ReconcileKey.for_object(obj)
        LOGGER.debug("Enqueue Deployment %s on %s", key, event)
        METRICS.enqueued_total.labels(kind="Deployment", event=event).inc()
        self.queue.add(key)

    def on_add(self, obj: Any) -> None:
        self._enqueue(obj, "create")

    def on_update(self, old: Any, new: Any) -> None:
        if not deployment_update_needs_reconcile(old, new):
            METRICS.filtered_updates_total.inc()
            return
        self._enqueue(new, "update")

    def on_delete(self, obj: Any) -> None:
        self._enqueue(obj, "delete")


class ReplicaSetEventHandler:
    """Maps every ReplicaSet event to the key of its controlling Deployment.

    No content filtering is applied: ReplicaSet creation, scaling and
    deletion are the steps of a rollout and each one drives the next.
    """

    def __init__(self, queue: Enqueuer) -> None:
        self.queue = queue

    def _enqueue_owner(self, obj: Any, event: str) -> ReconcileKey | None:
        key = controller_owner_key(obj)
        if key is None:
            return None
        LOGGER.debug(
            "Enqueue Deployment %s on ReplicaSet %s %s",
            key,
            getattr(_metadata(obj), "name", None),
            event,
        )
        METRICS.enqueued_total.labels(kind="ReplicaSet", event=event).inc()
        self.queue.add(key)
        return key

    def on_add(self, obj: Any) -> None:
        self._enqueue_owner(obj, "create")

    def on_update(self, old: Any, new: Any) -> None:
        # The owner may have changed; both the previous and the current one
        # need to observe it.
        old_key = controller_owner_key(old)
        new_key = self._enqueue_owner(new, "update")
        if old_key is not None and old_key != new_key:
            self._enqueue_owner(old, "update")

    def on_delete(self, obj: Any) -> None:
        self._enqueue_owner(obj, "delete")
