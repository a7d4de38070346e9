"""Configuration for region proposal generation.

:class:`ProposalConfig` bundles the options recognised by the proposal layer.
Values are validated once, when the configuration is built, and are never
clamped: an out-of-range value raises :class:`~proposax.errors.ConfigurationError`.

Model descriptions are expressed as :class:`ml_collections.ConfigDict` objects;
:func:`default_config` returns a template that :func:`proposax.layers.build_layer`
understands.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
from typing import Any, Final, Literal

from ml_collections import ConfigDict

from proposax.errors import ConfigurationError

ExecutionModel = Literal["sequential", "parallel"]

EXECUTION_MODELS: Final[tuple[str, ...]] = ("sequential", "parallel")
OUTPUT_ATTRIBUTES: Final[tuple[str, ...]] = ("class_id", "group_index", "anchor_index")
DEFAULT_DELTA_CLIP: Final[float] = math.log(1000.0 / 16.0)

__all__ = [
    "DEFAULT_DELTA_CLIP",
    "EXECUTION_MODELS",
    "OUTPUT_ATTRIBUTES",
    "ExecutionModel",
    "ProposalConfig",
    "default_config",
]


def _check_unit_interval(name: str, value: float) -> None:
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must lie in [0, 1]; received {value}.")


def _check_positive_int(name: str, value: int) -> None:
    if isinstance(value, bool) or int(value) != value or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer; received {value}.")


def _as_quad(name: str, values: Sequence[float]) -> tuple[float, float, float, float]:
    quad = tuple(float(v) for v in values)
    if len(quad) != 4:
        raise ConfigurationError(f"{name} must contain four values; received {len(quad)}.")
    if not all(math.isfinite(v) for v in quad):
        raise ConfigurationError(f"{name} must be finite; received {quad}.")
    return quad  # type: ignore[return-value]


@dataclass(frozen=True, kw_only=True)
class ProposalConfig:
    """Options controlling filtering, suppression and output layout.

    Attributes:
        score_threshold: Candidates scoring strictly below this value are
            rejected before decoding.
        iou_threshold: Boxes overlapping a kept box with ``IoU >= threshold``
            are suppressed.
        pre_nms_top_k: Maximum number of candidates fed to NMS per image and
            input group.
        post_nms_top_k: Maximum number of proposals emitted per image and
            output group.
        min_box_size: Minimum clipped width and height of a proposal.
        allow_border_boxes: When ``False``, boxes touching the image border are
            discarded.
        num_classes: Number of score channels per anchor. With one channel the
            score is objectness; otherwise channel 0 is background and every
            other class yields its own candidate.
        bbox_means: Regression de-normalisation offsets ``(dx, dy, dw, dh)``.
        bbox_stds: Regression de-normalisation scales ``(dx, dy, dw, dh)``.
        delta_clip: Symmetric clamp applied to ``dw`` and ``dh`` before
            exponentiation.
        merge_groups: Merge per-group survivors into one group, re-sorted and
            truncated to ``post_nms_top_k``.
        keep_input_order: Emit survivors in candidate (spatial) order rather
            than by descending score.
        execution: ``"sequential"`` (NumPy on the host) or ``"parallel"``
            (decode on the JAX default device).
        output_attributes: Extra ROI columns appended after the score.
    """

    score_threshold: float = 0.0
    iou_threshold: float = 0.7
    pre_nms_top_k: int = 6000
    post_nms_top_k: int = 300
    min_box_size: float = 0.0
    allow_border_boxes: bool = True
    num_classes: int = 2
    bbox_means: Sequence[float] = (0.0, 0.0, 0.0, 0.0)
    bbox_stds: Sequence[float] = (1.0, 1.0, 1.0, 1.0)
    delta_clip: float = DEFAULT_DELTA_CLIP
    merge_groups: bool = False
    keep_input_order: bool = False
    execution: ExecutionModel = "sequential"
    output_attributes: Sequence[str] = ()

    def __post_init__(self) -> None:
        """Validate every option and normalise sequences to tuples."""
        _check_unit_interval("score_threshold", self.score_threshold)
        _check_unit_interval("iou_threshold", self.iou_threshold)
        _check_positive_int("pre_nms_top_k", self.pre_nms_top_k)
        _check_positive_int("post_nms_top_k", self.post_nms_top_k)
        _check_positive_int("num_classes", self.num_classes)

        if not math.isfinite(self.min_box_size) or self.min_box_size < 0.0:
            raise ConfigurationError(f"min_box_size must be non-negative; received {self.min_box_size}.")
        if not math.isfinite(self.delta_clip) or self.delta_clip <= 0.0:
            raise ConfigurationError(f"delta_clip must be positive; received {self.delta_clip}.")

        means = _as_quad("bbox_means", self.bbox_means)
        stds = _as_quad("bbox_stds", self.bbox_stds)
        if any(s <= 0.0 for s in stds):
            raise ConfigurationError(f"bbox_stds must be positive; received {stds}.")

        if self.execution not in EXECUTION_MODELS:
            raise ConfigurationError(f"execution must be one of {EXECUTION_MODELS}; received {self.execution!r}.")

        attributes = tuple(self.output_attributes)
        unknown = [name for name in attributes if name not in OUTPUT_ATTRIBUTES]
        if unknown:
            raise ConfigurationError(f"Unknown output attributes {unknown}; expected a subset of {OUTPUT_ATTRIBUTES}.")
        if len(set(attributes)) != len(attributes):
            raise ConfigurationError(f"output_attributes contains duplicates: {attributes}.")

        object.__setattr__(self, "pre_nms_top_k", int(self.pre_nms_top_k))
        object.__setattr__(self, "post_nms_top_k", int(self.post_nms_top_k))
        object.__setattr__(self, "num_classes", int(self.num_classes))
        object.__setattr__(self, "bbox_means", means)
        object.__setattr__(self, "bbox_stds", stds)
        object.__setattr__(self, "output_attributes", attributes)

    @property
    def num_foreground_classes(self) -> int:
        """Number of score channels per anchor that produce candidates."""
        return 1 if self.num_classes == 1 else self.num_classes - 1

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> ProposalConfig:
        """Build a configuration from a ``ConfigDict`` or plain mapping."""
        if config is None:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config.keys()) - known)
        if unknown:
            raise ConfigurationError(f"Unknown proposal options: {unknown}.")
        return cls(**{key: config[key] for key in config.keys()})

    def to_config(self) -> ConfigDict:
        """Return the configuration as a ``ConfigDict``."""
        return ConfigDict({f.name: getattr(self, f.name) for f in fields(self)})


def default_config() -> ConfigDict:
    """Template model description for a single-scale ``RPNProposalSSD`` layer."""
    config = ConfigDict()
    config.type = "RPNProposalSSD"
    config.proposal = ProposalConfig().to_config()
    config.anchors = [
        {
            "base_size": 16.0,
            "aspect_ratios": (0.5, 1.0, 2.0),
            "scales": (8.0, 16.0, 32.0),
            "stride": 16.0,
            "offset": 0.5,
        }
    ]
    return config
