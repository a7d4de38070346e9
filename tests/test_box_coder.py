"""Tests for bounding box encoding and decoding utilities."""

from __future__ import annotations

import math

import jax.numpy as jnp
import numpy as np

from proposax.config import DEFAULT_DELTA_CLIP
from proposax.models.utils import clip_boxes, decode_boxes


def test_zero_delta_decodes_to_anchor_exactly() -> None:
    anchors = np.asarray(
        [
            [0.0, 0.0, 10.0, 10.0],
            [10.0, 10.0, 20.0, 20.0],
            [-4.0, 2.0, 12.0, 10.0],
        ],
        dtype=np.float32,
    )
    deltas = np.zeros_like(anchors)

    np.testing.assert_array_equal(decode_boxes(deltas, anchors), anchors)
    np.testing.assert_allclose(np.asarray(decode_boxes(deltas, anchors, xp=jnp)), anchors, rtol=0.0, atol=1e-5)


def test_decode_applies_center_shift_and_exponential_scale() -> None:
    anchors = np.asarray([[0.0, 0.0, 10.0, 20.0]], dtype=np.float32)
    deltas = np.asarray([[0.5, -0.25, math.log(2.0), 0.0]], dtype=np.float32)

    decoded = decode_boxes(deltas, anchors)

    # centre (5, 10) -> (10, 5); size (10, 20) -> (20, 20)
    np.testing.assert_allclose(decoded, [[0.0, -5.0, 20.0, 15.0]], rtol=1e-6, atol=1e-5)


def test_decode_denormalises_with_means_and_stds() -> None:
    anchors = np.asarray([[0.0, 0.0, 10.0, 10.0]], dtype=np.float32)
    deltas = np.asarray([[1.0, 1.0, 0.0, 0.0]], dtype=np.float32)

    decoded = decode_boxes(deltas, anchors, means=(0.1, 0.0, 0.0, 0.0), stds=(0.1, 0.2, 0.2, 0.2))

    # dx = 1 * 0.1 + 0.1 = 0.2, dy = 0.2
    np.testing.assert_allclose(decoded, [[2.0, 2.0, 12.0, 12.0]], rtol=1e-6, atol=1e-5)


def test_large_size_deltas_are_clamped_before_exp() -> None:
    anchors = np.asarray([[0.0, 0.0, 16.0, 16.0]], dtype=np.float32)
    deltas = np.asarray([[0.0, 0.0, 50.0, -50.0]], dtype=np.float32)

    decoded = decode_boxes(deltas, anchors)

    width = decoded[0, 2] - decoded[0, 0]
    height = decoded[0, 3] - decoded[0, 1]
    np.testing.assert_allclose(width, 16.0 * math.exp(DEFAULT_DELTA_CLIP), rtol=1e-4)
    np.testing.assert_allclose(height, 16.0 * math.exp(-DEFAULT_DELTA_CLIP), rtol=1e-4)
    assert np.isfinite(decoded).all()


def test_host_and_device_decoding_agree() -> None:
    rng = np.random.default_rng(0)
    corners = rng.uniform(0.0, 100.0, size=(64, 2))
    anchors = np.concatenate([corners, corners + rng.uniform(4.0, 64.0, size=(64, 2))], axis=1).astype(np.float32)
    deltas = rng.normal(scale=0.3, size=(64, 4)).astype(np.float32)

    host = decode_boxes(deltas, anchors, (0.0, 0.0, 0.0, 0.0), (0.1, 0.1, 0.2, 0.2))
    device = np.asarray(decode_boxes(deltas, anchors, (0.0, 0.0, 0.0, 0.0), (0.1, 0.1, 0.2, 0.2), xp=jnp))

    np.testing.assert_allclose(host, device, rtol=1e-5, atol=1e-4)


def test_decode_preserves_leading_dimensions() -> None:
    anchors = np.tile(np.asarray([0.0, 0.0, 8.0, 4.0], dtype=np.float32), (2, 3, 1))
    deltas = np.zeros_like(anchors)
    deltas[1, 2] = (0.25, -0.5, 0.0, math.log(3.0))

    decoded = decode_boxes(deltas, anchors)

    assert decoded.shape == (2, 3, 4)
    np.testing.assert_array_equal(decoded[0], anchors[0])
    # centre (4, 2) -> (6, 0); height 4 -> 12
    np.testing.assert_allclose(decoded[1, 2], [2.0, -6.0, 10.0, 6.0], rtol=1e-6, atol=1e-5)


def test_clip_boxes_bounds_coordinates() -> None:
    boxes = np.asarray([[-5.0, -10.0, 60.0, 70.0], [10.0, 10.0, 20.0, 20.0]], dtype=np.float32)

    clipped = clip_boxes(boxes, 40.0, 50.0)

    np.testing.assert_array_equal(clipped, [[0.0, 0.0, 50.0, 40.0], [10.0, 10.0, 20.0, 20.0]])
