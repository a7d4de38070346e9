"""Utility modules for proposal generation."""

from .anchor_generator import AnchorGrid, AnchorGridCache, AnchorSpec, make_anchor_templates
from .box_coder import clip_boxes, decode_boxes
from .iou import box_iou, overlap_matrix, pairwise_iou
from .nms import suppress, sweep

__all__ = [
    "AnchorGrid",
    "AnchorGridCache",
    "AnchorSpec",
    "box_iou",
    "clip_boxes",
    "decode_boxes",
    "make_anchor_templates",
    "overlap_matrix",
    "pairwise_iou",
    "suppress",
    "sweep",
]
