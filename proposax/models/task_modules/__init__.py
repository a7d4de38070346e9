"""Task-specific modules for proposal generation."""

from __future__ import annotations

from .decoding import Candidates, decode_parallel, decode_sequential
from .outputs import ProposalGroup, ProposalOutput
from .proposal_generator import ProposalGenerator, generate_proposals

__all__ = [
    "Candidates",
    "ProposalGenerator",
    "ProposalGroup",
    "ProposalOutput",
    "decode_parallel",
    "decode_sequential",
    "generate_proposals",
]
