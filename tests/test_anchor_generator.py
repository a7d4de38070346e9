"""Tests for anchor templates, grids and the grid cache."""

from __future__ import annotations

import math

import numpy as np
import pytest

from proposax.errors import ConfigurationError
from proposax.models.utils import AnchorGrid, AnchorGridCache, AnchorSpec, make_anchor_templates


@pytest.fixture
def spec() -> AnchorSpec:
    """Two-template spec at stride 8."""
    return AnchorSpec(templates=[(16.0, 8.0), (8.0, 16.0)], stride=8.0)


def test_anchor_count_matches_grid_and_templates(spec: AnchorSpec) -> None:
    grid = AnchorGrid(spec, 3, 5)

    assert grid.anchors_per_location == 2
    assert grid.num_anchors == 3 * 5 * 2
    assert grid.anchors.shape == (30, 4)


def test_anchor_at_matches_grid_layout(spec: AnchorSpec) -> None:
    """Grid anchors are cell-major, then template."""
    grid = AnchorGrid(spec, 3, 4)

    for row in range(3):
        for col in range(4):
            for template in range(2):
                expected = grid.anchor_at(row, col, template)
                np.testing.assert_allclose(grid.anchors[grid.flat_index(row, col, template)], expected, rtol=1e-6)


def test_anchors_are_centred_on_cells(spec: AnchorSpec) -> None:
    grid = AnchorGrid(spec, 1, 2)

    np.testing.assert_allclose(grid.anchor_at(0, 1, 0), (4.0, 0.0, 20.0, 8.0))
    np.testing.assert_allclose(grid.anchor_at(0, 0, 1), (0.0, -4.0, 8.0, 12.0))


def test_offset_moves_anchor_centres() -> None:
    grid = AnchorGrid(AnchorSpec(templates=[(10.0, 10.0)], stride=10.0, offset=0.0), 2, 2)

    np.testing.assert_allclose(grid.anchors[3], (5.0, 5.0, 15.0, 15.0))


def test_anchor_at_rejects_out_of_range_indices(spec: AnchorSpec) -> None:
    grid = AnchorGrid(spec, 2, 2)

    with pytest.raises(IndexError):
        grid.anchor_at(2, 0, 0)
    with pytest.raises(IndexError):
        grid.anchor_at(0, 0, 2)


def test_empty_grid_has_no_anchors(spec: AnchorSpec) -> None:
    grid = AnchorGrid(spec, 0, 4)

    assert grid.anchors.shape == (0, 4)


def test_templates_follow_ratio_and_scale_formula() -> None:
    templates = make_anchor_templates(16.0, aspect_ratios=(0.5, 1.0, 2.0), scales=(1.0, 2.0))

    assert len(templates) == 6
    widths = np.asarray([w for w, _ in templates])
    heights = np.asarray([h for _, h in templates])
    np.testing.assert_allclose(heights / widths, [0.5, 1.0, 2.0, 0.5, 1.0, 2.0], rtol=1e-6)
    np.testing.assert_allclose(np.sqrt(widths * heights), [16.0] * 3 + [32.0] * 3, rtol=1e-6)


def test_from_sizes_builds_equivalent_spec() -> None:
    spec = AnchorSpec.from_sizes(base_size=32.0, stride=16.0, aspect_ratios=(1.0,), scales=(0.5,))

    assert spec.templates == ((16.0, 16.0),)
    assert spec.stride == 16.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"templates": [], "stride": 8.0},
        {"templates": [(0.0, 8.0)], "stride": 8.0},
        {"templates": [(8.0, 8.0)], "stride": 0.0},
        {"templates": [(8.0, 8.0)], "stride": -4.0},
        {"templates": [(8.0, 8.0)], "stride": math.nan},
    ],
)
def test_invalid_specs_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        AnchorSpec(**kwargs)


@pytest.mark.parametrize(
    "args",
    [
        (0.0, (1.0,), (1.0,)),
        (16.0, (), (1.0,)),
        (16.0, (1.0,), ()),
        (16.0, (-1.0,), (1.0,)),
    ],
)
def test_invalid_template_parameters_are_rejected(args: tuple) -> None:
    with pytest.raises(ConfigurationError):
        make_anchor_templates(*args)


def test_cache_reuses_grid_for_identical_key(spec: AnchorSpec) -> None:
    cache = AnchorGridCache()

    first = cache.get(spec, 4, 4)
    second = cache.get(AnchorSpec(templates=[(16.0, 8.0), (8.0, 16.0)], stride=8.0), 4, 4)

    assert first is second
    assert len(cache) == 1


def test_cache_rebuilds_when_configuration_changes(spec: AnchorSpec) -> None:
    cache = AnchorGridCache()
    base = cache.get(spec, 4, 4)

    resized = cache.get(spec, 4, 5)
    restrided = cache.get(AnchorSpec(templates=spec.templates, stride=16.0), 4, 4)
    retemplated = cache.get(AnchorSpec(templates=[(16.0, 8.0)], stride=8.0), 4, 4)

    assert len({id(base), id(resized), id(restrided), id(retemplated)}) == 4
    assert resized.anchors.shape == (4 * 5 * 2, 4)
    np.testing.assert_allclose(restrided.anchors[0], (0.0, 4.0, 16.0, 12.0))
    assert retemplated.anchors_per_location == 1

    cache.clear()
    assert len(cache) == 0
