"""Tests for the RPNProposalSSD layer and the layer registry."""

from __future__ import annotations

import numpy as np
import pytest

from proposax.config import default_config
from proposax.errors import ConfigurationError, ShapeMismatchError
from proposax.layers import LAYER_REGISTRY, LayerRegistry, RPNProposalLayer, anchor_spec_from_config, build_layer


@pytest.fixture
def layer_config():
    config = default_config()
    config.anchors = [{"templates": [(10.0, 10.0)], "stride": 10.0}]
    config.proposal.num_classes = 1
    config.proposal.score_threshold = 0.5
    config.proposal.output_attributes = ("group_index",)
    return config


@pytest.fixture
def bottoms() -> list[np.ndarray]:
    scores = np.asarray([[0.9, 0.4], [0.95, 0.3]], dtype=np.float32)[None, None]
    deltas = np.zeros((1, 4, 2, 2), dtype=np.float32)
    im_info = np.asarray([[20.0, 20.0, 1.0]], dtype=np.float32)
    return [scores, deltas, im_info]


def test_registry_builds_proposal_layer(layer_config) -> None:
    layer = build_layer(layer_config)

    assert isinstance(layer, RPNProposalLayer)
    assert "RPNProposalSSD" in LAYER_REGISTRY
    assert layer.rois_dim == 7
    assert layer.num_tops == 1


def test_default_description_builds_multi_template_layer() -> None:
    layer = build_layer(default_config())

    assert layer.generator.anchor_specs[0].num_templates == 9
    assert layer.setup([(1, 18, 4, 4), (1, 36, 4, 4), (1, 3)]) == [(0, 6)]


def test_setup_reports_top_shapes(layer_config) -> None:
    layer = build_layer(layer_config)

    tops = layer.setup([(1, 1, 2, 2), (1, 4, 2, 2), (1, 3)])

    assert tops == [(0, 7)]
    assert layer.generator.setup([(1, 1, 2, 2)], [(1, 4, 2, 2)])[0].num_anchors == 4


def test_forward_emits_roi_rows(layer_config, bottoms: list[np.ndarray]) -> None:
    layer = build_layer(layer_config)

    (rois,) = layer.forward(bottoms)

    np.testing.assert_allclose(
        rois,
        [
            [0.0, 0.0, 10.0, 10.0, 20.0, 0.95, 0.0],
            [0.0, 0.0, 0.0, 10.0, 10.0, 0.9, 0.0],
        ],
        rtol=1e-6,
    )


def test_backward_honours_propagate_down(layer_config, bottoms: list[np.ndarray]) -> None:
    layer = build_layer(layer_config)
    tops = layer.forward(bottoms)

    grads = layer.backward(tops, [True, False, False], bottoms)

    assert grads[1] is None and grads[2] is None
    assert grads[0].shape == bottoms[0].shape
    assert not grads[0].any()

    with pytest.raises(ShapeMismatchError):
        layer.backward(tops, [True], bottoms)


def test_too_few_bottoms_are_rejected(layer_config, bottoms: list[np.ndarray]) -> None:
    layer = build_layer(layer_config)

    with pytest.raises(ShapeMismatchError, match="at least 3"):
        layer.forward(bottoms[:2])
    with pytest.raises(ShapeMismatchError):
        layer.forward(bottoms[:2] + bottoms)


def test_im_info_batch_must_match(layer_config) -> None:
    layer = build_layer(layer_config)

    with pytest.raises(ShapeMismatchError, match="im_info"):
        layer.setup([(1, 1, 2, 2), (1, 4, 2, 2), (2, 3)])


def test_two_sources_give_two_tops(layer_config) -> None:
    layer_config.anchors = [
        {"templates": [(10.0, 10.0)], "stride": 10.0},
        {"base_size": 20.0, "aspect_ratios": (1.0,), "stride": 20.0},
    ]
    layer = build_layer(layer_config)

    assert layer.setup([(1, 1, 2, 2), (1, 4, 2, 2), (1, 1, 1, 1), (1, 4, 1, 1), (1, 3)]) == [(0, 7), (0, 7)]

    layer_config.proposal.merge_groups = True
    assert build_layer(layer_config).num_tops == 1


def test_anchor_entry_needs_templates_or_base_size() -> None:
    with pytest.raises(ConfigurationError):
        anchor_spec_from_config({"stride": 8.0})


def test_layer_requires_anchor_entries(layer_config) -> None:
    layer_config.anchors = []

    with pytest.raises(ConfigurationError):
        build_layer(layer_config)


def test_unknown_proposal_option_is_rejected(layer_config) -> None:
    layer_config.proposal.nms_threshold = 0.5

    with pytest.raises(ConfigurationError, match="nms_threshold"):
        build_layer(layer_config)


def test_registry_rejects_duplicates_and_unknown_names() -> None:
    registry = LayerRegistry("TEST_REGISTRY")

    @registry.register("Identity")
    class Identity:
        @classmethod
        def from_config(cls, config):
            return cls()

    assert registry.names() == ["Identity"]
    assert isinstance(registry.build({"type": "Identity"}), Identity)
    with pytest.raises(KeyError, match="already registered"):
        registry.register("Identity")(Identity)
    with pytest.raises(KeyError, match="Identity"):
        registry.get("Missing")
