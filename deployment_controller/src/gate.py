from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from deployment_controller.src.kube import ReconcileKey
from deployment_controller.src.strategy import (
    BatchStrategy,
    RollingStyle,
    StrategyDecodeError,
    decode_strategy,
    encode_strategy,
    is_under_rollout_control,
    strategy_annotation,
)

LOGGER = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    """Terminal classification of one reconciliation attempt."""

    SKIP_NOT_FOUND = "skip_not_found"
    SKIP_INELIGIBLE = "skip_ineligible"
    SKIP_WRONG_STYLE = "skip_wrong_style"
    SKIP_UNPARSEABLE = "skip_unparseable"
    DISPATCHED = "dispatched"


@dataclass(frozen=True)
class DeploymentContext:
    """Everything a single sync call needs, bound to one Deployment snapshot.

    Built fresh for every reconciliation and discarded when the sync engine
    returns.  The strategy is decoded from the snapshot's own annotation and
    is never reused across reconciliations.
    """

    apps_api: Any
    replica_set_lister: Any
    pod_lister: Any
    event_recorder: Any
    strategy: BatchStrategy
    deployment: Any

    @property
    def key(self) -> ReconcileKey:
        return ReconcileKey.for_object(self.deployment)


@dataclass(frozen=True)
class GateResult:
    outcome: Outcome
    context: DeploymentContext | None = None

    @property
    def dispatched(self) -> bool:
        return self.outcome is Outcome.DISPATCHED


class ContextBuilder:
    """Decides whether this controller acts on a Deployment and builds its context.

    Checks run in order and the first failure wins:

    1. The Deployment must be under rollout control; otherwise it is skipped
       quietly, since most Deployments in a cluster are unmanaged.
    2. The strategy annotation must decode.  A malformed value is logged as
       an error and skipped without retry: the same bytes will fail the same
       way until someone rewrites the annotation, which produces a new event.
    3. Canary-style strategies belong to the canary controller and are
       skipped so the two controllers never act on the same Deployment.

    The API clients, listers and event recorder are shared by all workers and
    must be safe for concurrent use.
    """

    def __init__(
        self,
        apps_api: Any,
        replica_set_lister: Any,
        pod_lister: Any,
        event_recorder: Any,
    ) -> None:
        self.apps_api = apps_api
        self.replica_set_lister = replica_set_lister
        self.pod_lister = pod_lister
        self.event_recorder = event_recorder

    def build(self, deployment: Any) -> GateResult:
        key = ReconcileKey.for_object(deployment)

        if not is_under_rollout_control(deployment):
            LOGGER.debug("Deployment %s is not under rollout control, ignore", key)
            return GateResult(Outcome.SKIP_INELIGIBLE)

        raw = strategy_annotation(deployment)
        try:
            strategy = decode_strategy(raw)
        except StrategyDecodeError as exc:
            LOGGER.error("Failed to unmarshal strategy for deployment %s: %s (%s)", key, raw, exc)
            return GateResult(Outcome.SKIP_UNPARSEABLE)

        if strategy.style is RollingStyle.CANARY:
            LOGGER.debug("Deployment %s uses canary rolling style, ignore", key)
            return GateResult(Outcome.SKIP_WRONG_STYLE)

        LOGGER.debug("Processing deployment %s strategy %s", key, encode_strategy(strategy))
        return GateResult(
            Outcome.DISPATCHED,
            DeploymentContext(
                apps_api=self.apps_api,
                replica_set_lister=self.replica_set_lister,
                pod_lister=self.pod_lister,
                event_recorder=self.event_recorder,
                strategy=strategy,
                deployment=deployment,
            ),
        )
