"""Non-maximum suppression utilities.

Greedy NMS over boxes that are already sorted by descending score: the first
undecided box is kept and every later undecided box overlapping it with
``IoU >= iou_threshold`` is removed, until no candidates remain. Boxes earlier
in the input win ties, so the result is deterministic.

Two entry points share the sweep:

* :func:`suppress` computes one IoU row per kept box on the host.
* :func:`sweep` walks a precomputed boolean suppression matrix, e.g. the one
  built on device by :func:`proposax.models.utils.iou.overlap_matrix`.

Overlaps of exactly zero never suppress, so degenerate boxes are only removed
by the upstream size filter.
"""

from __future__ import annotations

import numpy as np
from jaxtyping import Bool, Float, Int

from .iou import pairwise_iou

HostBoxes = Float[np.ndarray, "num_boxes 4"]
HostLabels = Int[np.ndarray, "num_boxes"]
HostIndices = Int[np.ndarray, "num_kept"]
SuppressionMatrix = Bool[np.ndarray, "num_boxes num_boxes"]


def _validate_inputs(boxes: np.ndarray, iou_threshold: float, labels: np.ndarray | None) -> None:
    if boxes.ndim != 2 or boxes.shape[-1] != 4:
        raise ValueError(f"boxes must have shape (N, 4); received {boxes.shape}.")
    if not np.isfinite(boxes).all():
        raise ValueError("boxes must contain only finite coordinates.")
    if not 0.0 <= iou_threshold <= 1.0:
        raise ValueError(f"iou_threshold must lie in [0, 1]; received {iou_threshold}.")
    if labels is not None and labels.shape != (boxes.shape[0],):
        raise ValueError(f"labels must have shape ({boxes.shape[0]},); received {labels.shape}.")


def suppress(
    boxes: HostBoxes,
    iou_threshold: float,
    *,
    labels: HostLabels | None = None,
) -> HostIndices:
    """Run greedy NMS on score-sorted boxes.

    Args:
        boxes: Boxes in ``(x1, y1, x2, y2)`` format, sorted by descending score.
        iou_threshold: Boxes with ``IoU >= iou_threshold`` against a kept box
            are removed.
        labels: Optional class ids. Boxes with different labels never suppress
            each other.

    Returns:
        Indices of the kept boxes in input order.
    """
    boxes = np.asarray(boxes, dtype=np.float32)
    labels = None if labels is None else np.asarray(labels)
    _validate_inputs(boxes, iou_threshold, labels)

    num_boxes = boxes.shape[0]
    suppressed = np.zeros((num_boxes,), dtype=np.bool_)
    kept: list[int] = []
    for index in range(num_boxes):
        if suppressed[index]:
            continue
        kept.append(index)
        if index + 1 == num_boxes:
            break
        ious = pairwise_iou(boxes[index : index + 1], boxes[index + 1 :])[0]
        overlapping = np.logical_and(ious >= iou_threshold, ious > 0.0)
        if labels is not None:
            overlapping &= labels[index + 1 :] == labels[index]
        suppressed[index + 1 :] |= overlapping
    return np.asarray(kept, dtype=np.int64)


def sweep(overlaps: SuppressionMatrix) -> HostIndices:
    """Greedy sweep over a precomputed suppression matrix.

    Args:
        overlaps: Square boolean matrix; ``overlaps[i, j]`` means a kept box
            ``i`` removes box ``j``. Rows and columns follow descending score.

    Returns:
        Indices of the kept boxes in input order.
    """
    overlaps = np.asarray(overlaps, dtype=np.bool_)
    if overlaps.ndim != 2 or overlaps.shape[0] != overlaps.shape[1]:
        raise ValueError(f"overlaps must be a square matrix; received {overlaps.shape}.")

    num_boxes = overlaps.shape[0]
    suppressed = np.zeros((num_boxes,), dtype=np.bool_)
    kept: list[int] = []
    for index in range(num_boxes):
        if suppressed[index]:
            continue
        kept.append(index)
        suppressed[index + 1 :] |= overlaps[index, index + 1 :]
    return np.asarray(kept, dtype=np.int64)


__all__ = ["suppress", "sweep"]
