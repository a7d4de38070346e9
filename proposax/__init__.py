"""proposax: region proposal generation with JAX and NumPy."""

from __future__ import annotations

from .config import ProposalConfig, default_config
from .errors import ConfigurationError, NumericalError, ProposalError, ShapeMismatchError
from .layers import LAYER_REGISTRY, RPNProposalLayer, build_layer
from .models.task_modules import ProposalGenerator, ProposalGroup, ProposalOutput, generate_proposals
from .models.utils import AnchorGrid, AnchorGridCache, AnchorSpec, make_anchor_templates, suppress

__version__ = "0.1.0"

__all__ = [
    "LAYER_REGISTRY",
    "AnchorGrid",
    "AnchorGridCache",
    "AnchorSpec",
    "ConfigurationError",
    "NumericalError",
    "ProposalConfig",
    "ProposalError",
    "ProposalGenerator",
    "ProposalGroup",
    "ProposalOutput",
    "RPNProposalLayer",
    "ShapeMismatchError",
    "build_layer",
    "default_config",
    "generate_proposals",
    "make_anchor_templates",
    "suppress",
]
