"""Framework-facing layers."""

from .registry import LAYER_REGISTRY, LayerRegistry, build_layer
from .rpn_proposal import RPNProposalLayer, anchor_spec_from_config

__all__ = ["LAYER_REGISTRY", "LayerRegistry", "RPNProposalLayer", "anchor_spec_from_config", "build_layer"]
