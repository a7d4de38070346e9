"""Candidate decoding for one input group.

The decode phase turns raw score and delta maps into per-image candidate
lists: score threshold, delta decoding against the anchor grid, clipping to
the image, and size/border filtering. Two execution models are provided:

* :func:`decode_sequential` walks the batch on the host with NumPy and
  rejects low-scoring candidates before decoding them.
* :func:`decode_parallel` decodes every ``(image, anchor)`` pair in one jitted
  :func:`jax.vmap` call on the default device. Fetching the result to the host
  is the barrier between the decode and suppression phases.

Both return :class:`Candidates` in the same candidate order,
``((row * width + col) * num_templates + template) * num_fg_classes + class``.
"""

from __future__ import annotations

from functools import partial
from typing import Any, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Bool, Float, Int

from proposax.config import ProposalConfig
from proposax.models.utils.anchor_generator import AnchorGrid
from proposax.models.utils.box_coder import clip_boxes, decode_boxes

HostScoreMap = Float[np.ndarray, "batch anchors_x_classes height width"]
HostDeltaMap = Float[np.ndarray, "batch anchors_x_4 height width"]
HostImageShapes = Float[np.ndarray, "batch 2"]


class Candidates(NamedTuple):
    """Decoded candidates of one image, in candidate order.

    Attributes:
        boxes: Clipped boxes shaped ``(num_candidates, 4)``.
        scores: Scores shaped ``(num_candidates,)``.
        class_ids: Class id of each candidate.
        anchor_indices: Flat ``cell * num_templates + template`` anchor index.
        order: Flat candidate index, used as the stable tie-break.
    """

    boxes: Float[np.ndarray, "num_candidates 4"]
    scores: Float[np.ndarray, "num_candidates"]
    class_ids: Int[np.ndarray, "num_candidates"]
    anchor_indices: Int[np.ndarray, "num_candidates"]
    order: Int[np.ndarray, "num_candidates"]


def flatten_score_map(scores: HostScoreMap, num_templates: int, num_classes: int) -> Float[np.ndarray, "batch num_anchors num_fg_classes"]:
    """Reorder ``(N, C*A, H, W)`` class-major scores to ``(N, H*W*A, C_fg)``.

    With a single class the objectness channel is kept; otherwise the
    background channel (class 0) is dropped.
    """
    batch, _, height, width = scores.shape
    per_class = scores.reshape(batch, num_classes, num_templates, height, width)
    per_anchor = per_class.transpose(0, 3, 4, 2, 1).reshape(batch, height * width * num_templates, num_classes)
    if num_classes == 1:
        return per_anchor
    return per_anchor[..., 1:]


def flatten_delta_map(deltas: HostDeltaMap, num_templates: int) -> Float[np.ndarray, "batch num_anchors 4"]:
    """Reorder ``(N, A*4, H, W)`` deltas to ``(N, H*W*A, 4)``."""
    batch, _, height, width = deltas.shape
    per_anchor = deltas.reshape(batch, num_templates, 4, height, width)
    return per_anchor.transpose(0, 3, 4, 1, 2).reshape(batch, height * width * num_templates, 4)


def foreground_class_ids(num_classes: int) -> Int[np.ndarray, "num_fg_classes"]:
    """Class ids carried by the flattened score columns."""
    if num_classes == 1:
        return np.zeros((1,), dtype=np.int32)
    return np.arange(1, num_classes, dtype=np.int32)


def valid_box_mask(
    boxes: Any,
    height: Any,
    width: Any,
    *,
    min_box_size: float,
    allow_border_boxes: bool,
) -> Any:
    """Keep clipped boxes with positive size at least ``min_box_size``.

    When border boxes are not allowed, boxes touching any image edge are
    rejected as well.
    """
    box_widths = boxes[..., 2] - boxes[..., 0]
    box_heights = boxes[..., 3] - boxes[..., 1]
    valid = (box_widths > 0.0) & (box_heights > 0.0)
    valid = valid & (box_widths >= min_box_size) & (box_heights >= min_box_size)
    if not allow_border_boxes:
        inside = (boxes[..., 0] > 0.0) & (boxes[..., 1] > 0.0) & (boxes[..., 2] < width) & (boxes[..., 3] < height)
        valid = valid & inside
    return valid


def _empty_candidates() -> Candidates:
    return Candidates(
        boxes=np.zeros((0, 4), dtype=np.float32),
        scores=np.zeros((0,), dtype=np.float32),
        class_ids=np.zeros((0,), dtype=np.int32),
        anchor_indices=np.zeros((0,), dtype=np.int64),
        order=np.zeros((0,), dtype=np.int64),
    )


def _gather(
    boxes: Float[np.ndarray, "num_anchors_or_candidates 4"],
    scores: Float[np.ndarray, "num_anchors num_fg_classes"],
    anchor_idx: Int[np.ndarray, "num_candidates"],
    class_idx: Int[np.ndarray, "num_candidates"],
    class_ids: Int[np.ndarray, "num_fg_classes"],
) -> Candidates:
    num_fg = scores.shape[1]
    return Candidates(
        boxes=np.ascontiguousarray(boxes, dtype=np.float32),
        scores=scores[anchor_idx, class_idx].astype(np.float32),
        class_ids=class_ids[class_idx],
        anchor_indices=anchor_idx.astype(np.int64),
        order=anchor_idx.astype(np.int64) * num_fg + class_idx.astype(np.int64),
    )


def decode_sequential(
    scores: HostScoreMap,
    deltas: HostDeltaMap,
    image_shapes: HostImageShapes,
    grid: AnchorGrid,
    config: ProposalConfig,
) -> list[Candidates]:
    """Decode candidates for every image of one group on the host."""
    num_templates = grid.anchors_per_location
    flat_scores = flatten_score_map(scores, num_templates, config.num_classes)
    flat_deltas = flatten_delta_map(deltas, num_templates)
    class_ids = foreground_class_ids(config.num_classes)

    results = []
    for image_index in range(flat_scores.shape[0]):
        image_scores = flat_scores[image_index]
        anchor_idx, class_idx = np.nonzero(image_scores >= np.float32(config.score_threshold))
        if anchor_idx.size == 0:
            results.append(_empty_candidates())
            continue

        decoded = decode_boxes(
            flat_deltas[image_index][anchor_idx],
            grid.anchors[anchor_idx],
            config.bbox_means,
            config.bbox_stds,
            clip_value=config.delta_clip,
        )
        height, width = image_shapes[image_index]
        clipped = clip_boxes(decoded, height, width)
        keep = valid_box_mask(
            clipped,
            height,
            width,
            min_box_size=np.float32(config.min_box_size),
            allow_border_boxes=config.allow_border_boxes,
        )
        results.append(_gather(clipped[keep], image_scores, anchor_idx[keep], class_idx[keep], class_ids))
    return results


@partial(jax.jit, static_argnames=("allow_border_boxes",))
def _decode_batch(
    anchors: Float[Array, "num_anchors 4"],
    scores: Float[Array, "batch num_anchors num_fg_classes"],
    deltas: Float[Array, "batch num_anchors 4"],
    image_shapes: Float[Array, "batch 2"],
    means: Float[Array, 4],
    stds: Float[Array, 4],
    clip_value: Float[Array, ""],
    score_threshold: Float[Array, ""],
    min_box_size: Float[Array, ""],
    *,
    allow_border_boxes: bool,
) -> tuple[Float[Array, "batch num_anchors 4"], Bool[Array, "batch num_anchors num_fg_classes"]]:
    def decode_single(
        single_scores: Float[Array, "num_anchors num_fg_classes"],
        single_deltas: Float[Array, "num_anchors 4"],
        single_shape: Float[Array, 2],
    ) -> tuple[Float[Array, "num_anchors 4"], Bool[Array, "num_anchors num_fg_classes"]]:
        decoded = decode_boxes(single_deltas, anchors, means, stds, clip_value=clip_value, xp=jnp)
        height, width = single_shape[0], single_shape[1]
        clipped = clip_boxes(decoded, height, width, xp=jnp)
        box_ok = valid_box_mask(
            clipped,
            height,
            width,
            min_box_size=min_box_size,
            allow_border_boxes=allow_border_boxes,
        )
        valid = jnp.logical_and(single_scores >= score_threshold, box_ok[:, None])
        return clipped, valid

    return jax.vmap(decode_single)(scores, deltas, image_shapes)


def decode_parallel(
    scores: HostScoreMap,
    deltas: HostDeltaMap,
    image_shapes: HostImageShapes,
    grid: AnchorGrid,
    config: ProposalConfig,
) -> list[Candidates]:
    """Decode candidates for every image of one group on the JAX device."""
    num_templates = grid.anchors_per_location
    flat_scores = flatten_score_map(scores, num_templates, config.num_classes)
    flat_deltas = flatten_delta_map(deltas, num_templates)
    class_ids = foreground_class_ids(config.num_classes)

    batch = flat_scores.shape[0]
    if grid.num_anchors == 0:
        return [_empty_candidates() for _ in range(batch)]

    device_boxes, device_valid = _decode_batch(
        jnp.asarray(grid.anchors),
        jnp.asarray(flat_scores, dtype=jnp.float32),
        jnp.asarray(flat_deltas, dtype=jnp.float32),
        jnp.asarray(image_shapes, dtype=jnp.float32),
        jnp.asarray(config.bbox_means, dtype=jnp.float32),
        jnp.asarray(config.bbox_stds, dtype=jnp.float32),
        jnp.asarray(config.delta_clip, dtype=jnp.float32),
        jnp.asarray(config.score_threshold, dtype=jnp.float32),
        jnp.asarray(config.min_box_size, dtype=jnp.float32),
        allow_border_boxes=config.allow_border_boxes,
    )
    # Barrier: every decode must finish before suppression starts.
    boxes, valid = jax.device_get((device_boxes, device_valid))

    results = []
    for image_index in range(batch):
        anchor_idx, class_idx = np.nonzero(valid[image_index])
        if anchor_idx.size == 0:
            results.append(_empty_candidates())
            continue
        results.append(_gather(boxes[image_index][anchor_idx], flat_scores[image_index], anchor_idx, class_idx, class_ids))
    return results


__all__ = [
    "Candidates",
    "decode_parallel",
    "decode_sequential",
    "flatten_delta_map",
    "flatten_score_map",
    "foreground_class_ids",
    "valid_box_mask",
]
