"""``RPNProposalSSD`` layer wrapping :class:`ProposalGenerator`.

Bottoms are ``[score_0, delta_0, ..., score_n, delta_n, im_info]``: one
score/delta pair per feature-map source followed by the per-image
``(height, width, ...)`` info. The layer emits one ROI array per output group
with rows ``[image_index, x_min, y_min, x_max, y_max, score, *attributes]``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
from jaxtyping import Float

from proposax.config import ProposalConfig
from proposax.errors import ConfigurationError, ShapeMismatchError
from proposax.models.task_modules.outputs import ROI_BASE_COLUMNS, ProposalOutput
from proposax.models.task_modules.proposal_generator import ProposalGenerator
from proposax.models.utils.anchor_generator import AnchorSpec

from .registry import LAYER_REGISTRY

Rois = Float[np.ndarray, "num_rois rois_dim"]


def anchor_spec_from_config(entry: Mapping[str, Any]) -> AnchorSpec:
    """Build an :class:`AnchorSpec` from explicit templates or from sizes."""
    offset = entry.get("offset", 0.5)
    if "templates" in entry:
        return AnchorSpec(templates=entry["templates"], stride=entry["stride"], offset=offset)
    if "base_size" in entry:
        return AnchorSpec.from_sizes(
            base_size=entry["base_size"],
            stride=entry["stride"],
            aspect_ratios=entry.get("aspect_ratios", (0.5, 1.0, 2.0)),
            scales=entry.get("scales", (1.0,)),
            offset=offset,
        )
    raise ConfigurationError("Anchor entries need either 'templates' or 'base_size'.")


@LAYER_REGISTRY.register("RPNProposalSSD")
class RPNProposalLayer:
    """Region proposal layer with ``setup``/``forward``/``backward``."""

    type_name = "RPNProposalSSD"
    min_bottoms = 3

    def __init__(self, config: ProposalConfig, anchor_specs: Sequence[AnchorSpec]) -> None:
        self.config = config
        self.generator = ProposalGenerator(config, anchor_specs)
        self._num_pairs = len(self.generator.anchor_specs)

    @classmethod
    def from_config(cls, config: Any) -> RPNProposalLayer:
        anchors = config.get("anchors")
        if not anchors:
            raise ConfigurationError("RPNProposalSSD requires at least one anchors entry.")
        return cls(ProposalConfig.from_config(config.get("proposal")), [anchor_spec_from_config(entry) for entry in anchors])

    @property
    def rois_dim(self) -> int:
        return len(ROI_BASE_COLUMNS) + len(self.config.output_attributes)

    @property
    def num_tops(self) -> int:
        return 1 if self.config.merge_groups else self._num_pairs

    def _split_bottoms(self, bottoms: Sequence[Any]) -> tuple[list[Any], list[Any], Any]:
        if len(bottoms) < self.min_bottoms:
            raise ShapeMismatchError(f"{self.type_name} needs at least {self.min_bottoms} bottoms; received {len(bottoms)}.")
        if len(bottoms) != 2 * self._num_pairs + 1:
            raise ShapeMismatchError(
                f"{self.type_name} expects {self._num_pairs} score/delta pairs plus im_info ({2 * self._num_pairs + 1} bottoms); received {len(bottoms)}."
            )
        pairs = list(bottoms[:-1])
        return pairs[0::2], pairs[1::2], bottoms[-1]

    def setup(self, bottom_shapes: Sequence[tuple[int, ...]]) -> list[tuple[int, int]]:
        """Validate bottom shapes and return the (dynamic) top shapes.

        The first top dimension is the number of ROIs, unknown until forward;
        it is reported as ``0``.
        """
        score_shapes, delta_shapes, info_shape = self._split_bottoms(bottom_shapes)
        self.generator.setup(score_shapes, delta_shapes)
        batch_size = score_shapes[0][0]
        if len(info_shape) not in (1, 2) or info_shape[-1] < 2 or (len(info_shape) == 2 and info_shape[0] != batch_size):
            raise ShapeMismatchError(f"im_info must have shape (batch, >=2) or (>=2,); received {tuple(info_shape)}.")
        return [(0, self.rois_dim) for _ in range(self.num_tops)]

    def forward(self, bottoms: Sequence[Any]) -> list[Rois]:
        """Run proposal generation and lay out one ROI array per top."""
        score_maps, delta_maps, im_info = self._split_bottoms(bottoms)
        output: ProposalOutput = self.generator.forward(score_maps, delta_maps, im_info)
        return output.to_rois(self.config.output_attributes)

    def backward(
        self,
        top_grads: Sequence[Any],
        propagate_down: Sequence[bool],
        bottoms: Sequence[Any],
    ) -> list[np.ndarray | None]:
        """Zero gradients for bottoms that request propagation."""
        if len(propagate_down) != len(bottoms):
            raise ShapeMismatchError(f"propagate_down has {len(propagate_down)} entries for {len(bottoms)} bottoms.")
        zeros = self.generator.backward(top_grads, bottoms)
        return [grad if flag else None for grad, flag in zip(zeros, propagate_down)]


__all__ = ["RPNProposalLayer", "anchor_spec_from_config"]
