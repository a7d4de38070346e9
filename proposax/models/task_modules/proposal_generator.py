"""Region Proposal Network (RPN) proposal generation.

:class:`ProposalGenerator` turns one or more ``(score map, delta map)`` pairs,
one per feature-map source, into region proposals:

1. Score threshold, delta decoding against the anchor grid, clipping and
   size/border filtering (:mod:`proposax.models.task_modules.decoding`).
2. Stable sort by descending score and truncation to ``pre_nms_top_k``.
3. Class-aware greedy NMS (:mod:`proposax.models.utils.nms`).
4. Truncation to ``post_nms_top_k`` and optional cross-group merging.

Groups are processed independently and each forward call either returns a
complete :class:`ProposalOutput` or raises; no partial output is produced.
NaN or Inf values in the inputs fail the call with
:class:`~proposax.errors.NumericalError` instead of being filtered.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, NamedTuple

import jax
import numpy as np
from jaxtyping import Array, Float, Int

from proposax.config import ProposalConfig
from proposax.errors import ConfigurationError, NumericalError, ShapeMismatchError
from proposax.models.utils.anchor_generator import AnchorGrid, AnchorGridCache, AnchorSpec
from proposax.models.utils.iou import overlap_matrix
from proposax.models.utils.nms import suppress, sweep

from .decoding import Candidates, decode_parallel, decode_sequential
from .outputs import ProposalGroup, ProposalOutput

LOGGER = logging.getLogger("proposax.proposals")

ScoreMap = Float[Array, "batch anchors_x_classes height width"] | Float[np.ndarray, "batch anchors_x_classes height width"]
DeltaMap = Float[Array, "batch anchors_x_4 height width"] | Float[np.ndarray, "batch anchors_x_4 height width"]
ImageShape = Float[Array, "batch 2"] | Float[np.ndarray, "batch 2"] | Sequence[float]
Shape = tuple[int, ...]


class _Selection(NamedTuple):
    """Surviving proposals of one image."""

    boxes: Float[np.ndarray, "num_kept 4"]
    scores: Float[np.ndarray, "num_kept"]
    class_ids: Int[np.ndarray, "num_kept"]
    anchor_indices: Int[np.ndarray, "num_kept"]
    order: Int[np.ndarray, "num_kept"]
    group_indices: Int[np.ndarray, "num_kept"]

    def take(self, indices: Int[np.ndarray, "num_selected"]) -> _Selection:
        return _Selection(*(values[indices] for values in self))


def _as_list(maps: Any) -> list[Any]:
    if isinstance(maps, (np.ndarray, jax.Array)):
        return [maps]
    return list(maps)


def _prepare_image_shapes(image_shape: ImageShape, batch_size: int) -> Float[np.ndarray, "batch 2"]:
    """Normalise ``(2,)`` or ``(batch, >=2)`` image info to ``(batch, 2)`` ``(height, width)``."""
    shapes = np.asarray(image_shape, dtype=np.float32)
    if shapes.ndim == 1:
        if shapes.shape[0] < 2:
            raise ShapeMismatchError(f"image_shape of rank 1 must hold (height, width); received {shapes.shape}.")
        shapes = np.broadcast_to(shapes[None, :2], (batch_size, 2))
    elif shapes.ndim == 2:
        if shapes.shape[0] != batch_size or shapes.shape[1] < 2:
            raise ShapeMismatchError(f"image_shape must have shape (batch, 2); received {shapes.shape} for batch size {batch_size}.")
        shapes = shapes[:, :2]
    else:
        raise ShapeMismatchError(f"image_shape must have rank 1 or 2; received rank {shapes.ndim}.")

    if not np.isfinite(shapes).all():
        raise NumericalError("image_shape contains NaN or Inf values.")
    if (shapes <= 0).any():
        raise ShapeMismatchError(f"image heights and widths must be positive; received {shapes.tolist()}.")
    return np.ascontiguousarray(shapes)


def _check_finite(name: str, values: np.ndarray) -> None:
    if not np.isfinite(values).all():
        bad = int(values.size - np.count_nonzero(np.isfinite(values)))
        raise NumericalError(f"{name} contains {bad} NaN or Inf value(s).")


class ProposalGenerator:
    """Generate region proposals from dense RPN outputs.

    Args:
        config: Filtering, suppression and output options.
        anchor_specs: One :class:`AnchorSpec` per input pair, in input order.
        cache: Optional shared anchor grid cache.

    Example:
        >>> generator = ProposalGenerator(ProposalConfig(num_classes=1), [AnchorSpec(templates=[(10, 10)], stride=10)])
        >>> output = generator.forward([scores], [deltas], image_shape=(20, 20))
    """

    def __init__(
        self,
        config: ProposalConfig | None = None,
        anchor_specs: Sequence[AnchorSpec] = (),
        *,
        cache: AnchorGridCache | None = None,
    ) -> None:
        self.config = config if config is not None else ProposalConfig()
        self.anchor_specs = tuple(anchor_specs)
        if len(self.anchor_specs) == 0:
            raise ConfigurationError("At least one anchor spec is required.")
        for spec in self.anchor_specs:
            if not isinstance(spec, AnchorSpec):
                raise ConfigurationError(f"anchor_specs must contain AnchorSpec instances; received {type(spec).__name__}.")
        self._cache = cache if cache is not None else AnchorGridCache()

    @property
    def num_groups(self) -> int:
        return len(self.anchor_specs)

    def setup(self, score_shapes: Sequence[Shape], delta_shapes: Sequence[Shape]) -> tuple[AnchorGrid, ...]:
        """Validate input shapes and fetch or build the matching anchor grids.

        Grids live in the shared :class:`AnchorGridCache`; the generator keeps
        no per-call state.

        Raises:
            ConfigurationError: If the number of input pairs differs from the
                number of anchor specs.
            ShapeMismatchError: If score, delta and anchor dimensions disagree.
        """
        score_shapes = [tuple(int(d) for d in shape) for shape in score_shapes]
        delta_shapes = [tuple(int(d) for d in shape) for shape in delta_shapes]
        if len(score_shapes) != len(delta_shapes):
            raise ShapeMismatchError(f"Received {len(score_shapes)} score maps but {len(delta_shapes)} delta maps.")
        if len(score_shapes) != self.num_groups:
            raise ConfigurationError(f"Expected {self.num_groups} input pairs to match the anchor specs; received {len(score_shapes)}.")

        batch_size: int | None = None
        grids = []
        for group, (spec, score_shape, delta_shape) in enumerate(zip(self.anchor_specs, score_shapes, delta_shapes)):
            if len(score_shape) != 4:
                raise ShapeMismatchError(f"score map {group} must have shape (batch, A*C, H, W); received {score_shape}.")
            if len(delta_shape) != 4:
                raise ShapeMismatchError(f"delta map {group} must have shape (batch, A*4, H, W); received {delta_shape}.")

            batch, score_channels, height, width = score_shape
            if batch_size is None:
                batch_size = batch
            if batch != batch_size or delta_shape[0] != batch_size:
                raise ShapeMismatchError(f"Input pair {group} has batch sizes {batch}/{delta_shape[0]}; expected {batch_size}.")
            if delta_shape[2:] != (height, width):
                raise ShapeMismatchError(f"Input pair {group} spatial sizes differ: scores {(height, width)}, deltas {delta_shape[2:]}.")

            num_templates = spec.num_templates
            expected_scores = num_templates * self.config.num_classes
            if score_channels != expected_scores:
                raise ShapeMismatchError(
                    f"score map {group} has {score_channels} channels; expected {expected_scores} "
                    f"({num_templates} anchors x {self.config.num_classes} classes)."
                )
            if delta_shape[1] != num_templates * 4:
                raise ShapeMismatchError(f"delta map {group} has {delta_shape[1]} channels; expected {num_templates * 4} ({num_templates} anchors x 4).")

            grids.append(self._cache.get(spec, height, width))

        return tuple(grids)

    def __call__(self, score_maps: Any, delta_maps: Any, image_shape: ImageShape) -> ProposalOutput:
        return self.forward(score_maps, delta_maps, image_shape)

    def forward(
        self,
        score_maps: ScoreMap | Sequence[ScoreMap],
        delta_maps: DeltaMap | Sequence[DeltaMap],
        image_shape: ImageShape,
    ) -> ProposalOutput:
        """Generate proposals for every input group.

        Args:
            score_maps: Score maps shaped ``(batch, A*C, H, W)``, one per group.
            delta_maps: Delta maps shaped ``(batch, A*4, H, W)``, one per group.
            image_shape: ``(height, width)`` shared by the batch, or per-image
                ``(batch, >=2)`` image info.

        Returns:
            A :class:`ProposalOutput` with one group per input pair, or a
            single merged group when ``merge_groups`` is enabled.
        """
        scores_host = [np.asarray(scores, dtype=np.float32) for scores in _as_list(score_maps)]
        deltas_host = [np.asarray(deltas, dtype=np.float32) for deltas in _as_list(delta_maps)]

        grids = self.setup([s.shape for s in scores_host], [d.shape for d in deltas_host])

        batch_size = scores_host[0].shape[0]
        image_shapes = _prepare_image_shapes(image_shape, batch_size)
        for group, (scores, deltas) in enumerate(zip(scores_host, deltas_host)):
            _check_finite(f"score map {group}", scores)
            _check_finite(f"delta map {group}", deltas)

        decode = decode_parallel if self.config.execution == "parallel" else decode_sequential
        per_group: list[list[_Selection]] = []
        for group, (scores, deltas, grid) in enumerate(zip(scores_host, deltas_host, grids)):
            candidates = decode(scores, deltas, image_shapes, grid, self.config)
            selections = []
            for image_index, image_candidates in enumerate(candidates):
                selection = self._select(image_candidates, group)
                LOGGER.debug(
                    "group %d image %d: %d candidates after filtering, %d proposals kept.",
                    group,
                    image_index,
                    image_candidates.scores.shape[0],
                    selection.scores.shape[0],
                )
                selections.append(selection)
            per_group.append(selections)

        if self.config.merge_groups:
            merged = [self._merge([selections[image] for selections in per_group]) for image in range(batch_size)]
            groups = (self._assemble(0, merged),)
        else:
            groups = tuple(self._assemble(group, selections) for group, selections in enumerate(per_group))
        return ProposalOutput(groups=groups)

    def backward(self, top_grads: Any, inputs: Sequence[Any]) -> list[np.ndarray]:
        """Proposal selection is not differentiable; return zero gradients."""
        del top_grads
        return [np.zeros(np.shape(value), dtype=np.float32) for value in inputs]

    def _select(self, candidates: Candidates, group: int) -> _Selection:
        """Sort, truncate, suppress and truncate again for one image."""
        cfg = self.config
        selection = _Selection(
            boxes=candidates.boxes,
            scores=candidates.scores,
            class_ids=candidates.class_ids,
            anchor_indices=candidates.anchor_indices,
            order=candidates.order,
            group_indices=np.full(candidates.scores.shape, group, dtype=np.int32),
        )
        if selection.scores.shape[0] == 0:
            return selection

        ranked = np.argsort(-selection.scores, kind="stable")[: cfg.pre_nms_top_k]
        selection = selection.take(ranked)

        labels = selection.class_ids if cfg.num_foreground_classes > 1 else None
        if cfg.execution == "parallel":
            num_boxes = selection.boxes.shape[0]
            overlaps = jax.device_get(overlap_matrix(selection.boxes, cfg.iou_threshold, labels, size=cfg.pre_nms_top_k))
            keep = sweep(overlaps[:num_boxes, :num_boxes])
        else:
            keep = suppress(selection.boxes, cfg.iou_threshold, labels=labels)
        selection = selection.take(keep[: cfg.post_nms_top_k])

        if cfg.keep_input_order:
            selection = selection.take(np.argsort(selection.order, kind="stable"))
        return selection

    def _merge(self, selections: Sequence[_Selection]) -> _Selection:
        """Union per-group survivors of one image, re-sorted and truncated."""
        merged = _Selection(*(np.concatenate(parts, axis=0) for parts in zip(*selections)))
        ranked = np.argsort(-merged.scores, kind="stable")[: self.config.post_nms_top_k]
        merged = merged.take(ranked)
        if self.config.keep_input_order:
            merged = merged.take(np.lexsort((merged.order, merged.group_indices)))
        return merged

    def _assemble(self, index: int, selections: Sequence[_Selection]) -> ProposalGroup:
        if not selections:
            return ProposalGroup.empty(index)
        image_indices = np.concatenate(
            [np.full(selection.scores.shape, image, dtype=np.int32) for image, selection in enumerate(selections)],
            axis=0,
        )
        return ProposalGroup(
            index=index,
            image_indices=image_indices,
            boxes=np.concatenate([s.boxes for s in selections], axis=0).reshape(-1, 4),
            scores=np.concatenate([s.scores for s in selections], axis=0),
            class_ids=np.concatenate([s.class_ids for s in selections], axis=0),
            group_indices=np.concatenate([s.group_indices for s in selections], axis=0),
            anchor_indices=np.concatenate([s.anchor_indices for s in selections], axis=0),
        )


def generate_proposals(
    score_maps: ScoreMap | Sequence[ScoreMap],
    delta_maps: DeltaMap | Sequence[DeltaMap],
    image_shape: ImageShape,
    anchor_specs: Sequence[AnchorSpec],
    config: ProposalConfig | None = None,
) -> ProposalOutput:
    """Functional API: build a generator and run one forward pass."""
    return ProposalGenerator(config, anchor_specs).forward(score_maps, delta_maps, image_shape)


__all__ = ["ProposalGenerator", "generate_proposals"]
