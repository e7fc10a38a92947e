from __future__ import annotations

import enum
import json
from typing import Annotated, Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    Tag,
    TypeAdapter,
    ValidationError,
    model_validator,
)

DEPLOYMENT_STRATEGY_ANNOTATION = "rollouts.kruise.io/deployment-strategy"

DEFAULT_MAX_UNAVAILABLE = "25%"
DEFAULT_MAX_SURGE = "25%"


class StrategyDecodeError(ValueError):
    """Raised when the strategy annotation cannot be decoded."""


class RollingStyle(str, enum.Enum):
    """Closed set of rolling styles shared by every cooperating controller.

    The canary controller and this controller partition Deployments by this
    value, so adding a member means updating both of them.  Matching is
    case-insensitive: ``Canary`` and ``canary`` are the same style.
    """

    CANARY = "canary"
    PARTITION = "partition"
    ROLLING = "rolling"

    @classmethod
    def _missing_(cls, value: object) -> RollingStyle | None:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


IntOrPercent = Union[
    Annotated[StrictInt, Field(ge=0)],
    Annotated[str, StringConstraints(pattern=r"^\d+%$")],
]


def _style_tag(value: Any) -> str | None:
    """Return the union tag for a strategy payload, or None when it has no usable style."""
    if isinstance(value, BaseModel):
        return getattr(value, "style").value
    if not isinstance(value, dict):
        return None
    style = value.get("rollingStyle", value.get("style"))
    if style is None or style == "":
        return RollingStyle.PARTITION.value
    try:
        return RollingStyle(style).value
    except ValueError:
        return style if isinstance(style, str) else None


class _StrategyBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    style: RollingStyle = Field(alias="rollingStyle")

    @model_validator(mode="before")
    @classmethod
    def _default_style(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "style" in data:
            return data
        style = data.get("rollingStyle")
        if not style:
            return {**data, "rollingStyle": cls.model_fields["style"].default}
        if isinstance(style, str):
            return {**data, "rollingStyle": style.strip().lower()}
        return data


class CanaryStrategy(_StrategyBase):
    """Strategy owned by the sibling canary controller.

    Its parameters are never interpreted here; they are kept as extras so
    the value can be logged.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    style: RollingStyle = Field(default=RollingStyle.CANARY, alias="rollingStyle")

    @property
    def raw(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class RollingUpdate(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    max_unavailable: IntOrPercent = Field(default=DEFAULT_MAX_UNAVAILABLE, alias="maxUnavailable")
    max_surge: IntOrPercent = Field(default=DEFAULT_MAX_SURGE, alias="maxSurge")


class BatchStrategy(_StrategyBase):
    """Batched rolling update driven by this controller."""

    rolling_update: RollingUpdate = Field(default_factory=RollingUpdate, alias="rollingUpdate")
    partition: IntOrPercent = 0
    paused: StrictBool = False


class PartitionStrategy(BatchStrategy):
    style: RollingStyle = Field(default=RollingStyle.PARTITION, alias="rollingStyle")


class RollingStrategy(BatchStrategy):
    style: RollingStyle = Field(default=RollingStyle.ROLLING, alias="rollingStyle")


DeploymentStrategy = Annotated[
    Union[
        Annotated[CanaryStrategy, Tag(RollingStyle.CANARY.value)],
        Annotated[PartitionStrategy, Tag(RollingStyle.PARTITION.value)],
        Annotated[RollingStrategy, Tag(RollingStyle.ROLLING.value)],
    ],
    Discriminator(_style_tag),
]

_STRATEGY_ADAPTER: TypeAdapter[DeploymentStrategy] = TypeAdapter(DeploymentStrategy)


def decode_strategy(raw: str | None) -> CanaryStrategy | BatchStrategy:
    """Decode the JSON strategy annotation into a tagged strategy model.

    ``rollingStyle`` selects the variant, case-insensitively; a missing or
    empty style means :attr:`RollingStyle.PARTITION`.  Unknown keys are
    ignored.  Every failure is reported as :class:`StrategyDecodeError`.
    """
    if raw is None:
        raise StrategyDecodeError("strategy annotation is missing")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise StrategyDecodeError(f"strategy annotation is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise StrategyDecodeError("strategy annotation must be a JSON object")

    try:
        return _STRATEGY_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise StrategyDecodeError(str(exc)) from exc


def encode_strategy(strategy: CanaryStrategy | BatchStrategy) -> str:
    """Render a decoded strategy as compact JSON using the annotation's field names."""
    return strategy.model_dump_json(by_alias=True)


def strategy_annotation(deployment: Any) -> str | None:
    metadata = getattr(deployment, "metadata", None)
    annotations = getattr(metadata, "annotations", None) or {}
    return annotations.get(DEPLOYMENT_STRATEGY_ANNOTATION)


def is_under_rollout_control(deployment: Any) -> bool:
    """Return True if *deployment* is managed by the advanced deployment controllers.

    A managed Deployment carries a non-empty strategy annotation and is kept
    paused so the native Deployment controller does not roll it.
    """
    if not strategy_annotation(deployment):
        return False
    spec = getattr(deployment, "spec", None)
    return bool(getattr(spec, "paused", False))
