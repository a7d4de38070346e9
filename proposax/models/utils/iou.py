"""Intersection-over-Union utilities for bounding boxes.

Both :func:`pairwise_iou` (NumPy, host) and :func:`box_iou` (JAX, device)
operate on sets of boxes in ``(x1, y1, x2, y2)`` format and return pairwise
IoU matrices. IoU is ``intersection / union`` when the union is positive and
``0`` otherwise, so zero-area boxes never overlap anything.
"""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Bool, Float, Int

Boxes = Float[Array, "num_boxes 4"]
IoUMatrix = Float[Array, "num_boxes1 num_boxes2"]
HostBoxes = Float[np.ndarray, "num_boxes 4"]
HostIoUMatrix = Float[np.ndarray, "num_boxes1 num_boxes2"]


def _box_area(box: Float[Array, 4]) -> Float[Array, ""]:
    """Compute the non-negative area of a single box."""
    width = jnp.maximum(0.0, box[2] - box[0])
    height = jnp.maximum(0.0, box[3] - box[1])
    return width * height


def _validate_boxes(name: str, boxes: Any) -> Any:
    """Validate box tensor shape."""
    if boxes.ndim != 2 or boxes.shape[-1] != 4:
        raise ValueError(f"{name} must have shape (N, 4); received {boxes.shape}.")
    return boxes


@jax.jit
def _box_iou(boxes1: Boxes, boxes2: Boxes) -> IoUMatrix:
    areas1 = jax.vmap(_box_area)(boxes1)
    areas2 = jax.vmap(_box_area)(boxes2)

    def pairwise(box1: Float[Array, 4], area1: Float[Array, ""]) -> Any:
        def iou_with(box2: Float[Array, 4], area2: Float[Array, ""]) -> Float[Array, ""]:
            x1 = jnp.maximum(box1[0], box2[0])
            y1 = jnp.maximum(box1[1], box2[1])
            x2 = jnp.minimum(box1[2], box2[2])
            y2 = jnp.minimum(box1[3], box2[3])
            intersection = jnp.maximum(0.0, x2 - x1) * jnp.maximum(0.0, y2 - y1)
            union = area1 + area2 - intersection
            safe_union = jnp.where(union > 0.0, union, 1.0)
            return jnp.where(union > 0.0, intersection / safe_union, 0.0)

        return jax.vmap(iou_with, in_axes=(0, 0))(boxes2, areas2)

    return jax.vmap(pairwise, in_axes=(0, 0))(boxes1, areas1)


def box_iou(boxes1: Boxes, boxes2: Boxes) -> IoUMatrix:
    """Compute the pairwise Intersection-over-Union between two box sets."""
    boxes1 = _validate_boxes("boxes1", jnp.asarray(boxes1, dtype=jnp.float32))
    boxes2 = _validate_boxes("boxes2", jnp.asarray(boxes2, dtype=jnp.float32))

    if boxes1.shape[0] == 0 or boxes2.shape[0] == 0:
        return jnp.zeros((boxes1.shape[0], boxes2.shape[0]), dtype=jnp.float32)
    return _box_iou(boxes1, boxes2)


def pairwise_iou(boxes1: HostBoxes, boxes2: HostBoxes) -> HostIoUMatrix:
    """Host counterpart of :func:`box_iou` using NumPy broadcasting."""
    boxes1 = _validate_boxes("boxes1", np.asarray(boxes1, dtype=np.float32))
    boxes2 = _validate_boxes("boxes2", np.asarray(boxes2, dtype=np.float32))

    areas1 = np.maximum(0.0, boxes1[:, 2] - boxes1[:, 0]) * np.maximum(0.0, boxes1[:, 3] - boxes1[:, 1])
    areas2 = np.maximum(0.0, boxes2[:, 2] - boxes2[:, 0]) * np.maximum(0.0, boxes2[:, 3] - boxes2[:, 1])

    x1 = np.maximum(boxes1[:, None, 0], boxes2[None, :, 0])
    y1 = np.maximum(boxes1[:, None, 1], boxes2[None, :, 1])
    x2 = np.minimum(boxes1[:, None, 2], boxes2[None, :, 2])
    y2 = np.minimum(boxes1[:, None, 3], boxes2[None, :, 3])
    intersection = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    union = areas1[:, None] + areas2[None, :] - intersection

    safe_union = np.where(union > 0.0, union, 1.0)
    return np.where(union > 0.0, intersection / safe_union, 0.0).astype(np.float32)


@jax.jit
def _overlap_matrix(
    boxes: Boxes,
    iou_threshold: Float[Array, ""],
    labels: Int[Array, "num_boxes"],
    valid: Bool[Array, "num_boxes"],
) -> Bool[Array, "num_boxes num_boxes"]:
    ious = _box_iou(boxes, boxes)
    same_label = labels[:, None] == labels[None, :]
    both_valid = valid[:, None] & valid[None, :]
    overlapping = jnp.logical_and(ious >= iou_threshold, ious > 0.0)
    return overlapping & same_label & both_valid


def overlap_matrix(
    boxes: HostBoxes,
    iou_threshold: float,
    labels: Int[np.ndarray, "num_boxes"] | None = None,
    *,
    size: int | None = None,
) -> Bool[Array, "size size"]:
    """Boolean matrix marking box pairs that suppress each other.

    Entry ``(i, j)`` is ``True`` when both boxes share a label and
    ``IoU >= iou_threshold`` with a strictly positive overlap. The matrix is
    computed on the JAX default device.

    Args:
        boxes: Boxes shaped ``(N, 4)``.
        iou_threshold: Suppression threshold.
        labels: Optional class ids; boxes with different ids never suppress
            each other.
        size: Pad the inputs on the host to ``size`` rows so every call with
            the same ``size`` reuses one compiled program. Rows and columns
            past ``N`` are ``False``. Defaults to ``N``.
    """
    boxes = _validate_boxes("boxes", np.asarray(boxes, dtype=np.float32))
    num_boxes = boxes.shape[0]
    labels = np.zeros((num_boxes,), dtype=np.int32) if labels is None else np.asarray(labels, dtype=np.int32)
    if labels.shape != (num_boxes,):
        raise ValueError(f"labels must have shape ({num_boxes},); received {labels.shape}.")
    size = num_boxes if size is None else int(size)
    if size < num_boxes:
        raise ValueError(f"size must be at least the number of boxes ({num_boxes}); received {size}.")
    if size == 0:
        return jnp.zeros((0, 0), dtype=jnp.bool_)

    padded_boxes = np.zeros((size, 4), dtype=np.float32)
    padded_boxes[:num_boxes] = boxes
    padded_labels = np.full((size,), -1, dtype=np.int32)
    padded_labels[:num_boxes] = labels
    valid = np.arange(size) < num_boxes
    return _overlap_matrix(
        jnp.asarray(padded_boxes),
        jnp.asarray(iou_threshold, dtype=jnp.float32),
        jnp.asarray(padded_labels),
        jnp.asarray(valid),
    )


__all__ = ["box_iou", "overlap_matrix", "pairwise_iou"]
