"""Anchor-relative box decoding.

Regression deltas ``(dx, dy, dw, dh)`` move an anchor's centre by a fraction
of its size and rescale its width and height exponentially, following the
Faster R-CNN parameterisation.

Helpers take an ``xp`` array namespace, :mod:`numpy` for the sequential model
or :mod:`jax.numpy` inside the jitted parallel decode, and evaluate the same
float32 arithmetic in both. Boxes are ``(..., 4)`` arrays in
``(x1, y1, x2, y2)`` order.
"""

from __future__ import annotations

from collections.abc import Sequence
from types import ModuleType
from typing import Any

import numpy as np
from jaxtyping import Array, Float

from proposax.config import DEFAULT_DELTA_CLIP

Boxes = Float[Array, "... 4"] | Float[np.ndarray, "... 4"]
Deltas = Float[Array, "... 4"] | Float[np.ndarray, "... 4"]

_EPSILON = 1e-7


def decode_boxes(
    deltas: Deltas,
    anchors: Boxes,
    means: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
    stds: Sequence[float] = (1.0, 1.0, 1.0, 1.0),
    *,
    clip_value: float = DEFAULT_DELTA_CLIP,
    xp: ModuleType = np,
) -> Boxes:
    """Apply ``deltas * stds + means`` to ``anchors``.

    ``dw`` and ``dh`` are clamped to ``[-clip_value, clip_value]`` before
    exponentiation; the centre shift is left unclamped. A zero delta with
    unit stds and zero means reproduces the anchor.
    """
    deltas = xp.asarray(deltas, dtype=xp.float32)
    anchors = xp.asarray(anchors, dtype=xp.float32)
    if deltas.shape != anchors.shape:
        raise ValueError(f"deltas and anchors must share the same shape; got {deltas.shape} and {anchors.shape}.")

    deltas = deltas * xp.asarray(stds, dtype=xp.float32) + xp.asarray(means, dtype=xp.float32)

    sizes = anchors[..., 2:] - anchors[..., :2]
    centres = anchors[..., :2] + 0.5 * sizes
    safe_sizes = xp.maximum(sizes, _EPSILON)

    new_centres = centres + deltas[..., :2] * safe_sizes
    half_sizes = 0.5 * xp.exp(xp.clip(deltas[..., 2:], -clip_value, clip_value)) * safe_sizes
    return xp.concatenate((new_centres - half_sizes, new_centres + half_sizes), axis=-1)


def clip_boxes(boxes: Boxes, height: Any, width: Any, *, xp: ModuleType = np) -> Boxes:
    """Clip boxes to ``[0, width] x [0, height]``."""
    boxes = xp.asarray(boxes, dtype=xp.float32)
    return xp.stack(
        (
            xp.clip(boxes[..., 0], 0.0, width),
            xp.clip(boxes[..., 1], 0.0, height),
            xp.clip(boxes[..., 2], 0.0, width),
            xp.clip(boxes[..., 3], 0.0, height),
        ),
        axis=-1,
    )


__all__ = ["clip_boxes", "decode_boxes"]
