"""Anchor grids for region proposal generation.

For each spatial cell of a feature map, one anchor is placed per configured
template. Anchors are defined in absolute ``(x1, y1, x2, y2)`` image
coordinates, centred at ``((col + offset) * stride, (row + offset) * stride)``.

Key features:
    * Templates are explicit ``(width, height)`` pairs; :func:`make_anchor_templates`
      derives them from a base size, aspect ratios and scales.
    * Grid anchors are laid out cell-major, then by template, which is the
      candidate order used throughout proposal generation.
    * :class:`AnchorGridCache` memoises grids per full configuration key, so a
      change in stride, templates or grid size always yields a fresh grid.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from proposax.errors import ConfigurationError

LOGGER = logging.getLogger("proposax.anchors")

Template = tuple[float, float]
GridKey = tuple[tuple[Template, ...], float, float, int, int]


def make_anchor_templates(
    base_size: float,
    aspect_ratios: Sequence[float] = (0.5, 1.0, 2.0),
    scales: Sequence[float] = (1.0,),
) -> tuple[Template, ...]:
    """Derive ``(width, height)`` templates from sizes and ratios.

    Args:
        base_size: Nominal edge length of a square anchor at scale ``1``.
        aspect_ratios: Ratios of height to width.
        scales: Multiplicative scales applied on top of ``base_size``.

    Returns:
        One template per ``(scale, ratio)`` pair, scales-major.
    """
    if base_size <= 0:
        raise ConfigurationError(f"base_size must be positive; received {base_size}.")
    if len(aspect_ratios) == 0:
        raise ConfigurationError("aspect_ratios must contain at least one value.")
    if len(scales) == 0:
        raise ConfigurationError("scales must contain at least one value.")
    if any(r <= 0 for r in aspect_ratios):
        raise ConfigurationError(f"aspect_ratios must be positive; received {tuple(aspect_ratios)}.")
    if any(s <= 0 for s in scales):
        raise ConfigurationError(f"scales must be positive; received {tuple(scales)}.")

    templates = []
    for scale in scales:
        for ratio in aspect_ratios:
            ratio_sqrt = math.sqrt(ratio)
            templates.append((base_size * scale / ratio_sqrt, base_size * scale * ratio_sqrt))
    return tuple(templates)


@dataclass(frozen=True, kw_only=True)
class AnchorSpec:
    """Anchor templates and placement for one feature-map source.

    Attributes:
        templates: ``(width, height)`` of each anchor template in pixels.
        stride: Image pixels per feature-map cell.
        offset: Fraction of a cell between the cell origin and the anchor
            centre. ``0.5`` centres anchors on the cell.
    """

    templates: Sequence[Template]
    stride: float
    offset: float = 0.5

    def __post_init__(self) -> None:
        """Validate configuration and freeze templates into tuples."""
        templates = tuple((float(w), float(h)) for w, h in self.templates)
        if len(templates) == 0:
            raise ConfigurationError("templates must contain at least one anchor template.")
        if any(not (w > 0 and h > 0 and math.isfinite(w) and math.isfinite(h)) for w, h in templates):
            raise ConfigurationError(f"template sizes must be positive and finite; received {templates}.")
        if not math.isfinite(self.stride) or self.stride <= 0:
            raise ConfigurationError(f"stride must be positive; received {self.stride}.")
        if not math.isfinite(self.offset):
            raise ConfigurationError(f"offset must be finite; received {self.offset}.")
        object.__setattr__(self, "templates", templates)
        object.__setattr__(self, "stride", float(self.stride))
        object.__setattr__(self, "offset", float(self.offset))

    @property
    def num_templates(self) -> int:
        """Number of anchors placed at each feature-map cell."""
        return len(self.templates)

    @classmethod
    def from_sizes(
        cls,
        *,
        base_size: float,
        stride: float,
        aspect_ratios: Sequence[float] = (0.5, 1.0, 2.0),
        scales: Sequence[float] = (1.0,),
        offset: float = 0.5,
    ) -> AnchorSpec:
        """Build a spec from a base size, aspect ratios and scales."""
        return cls(templates=make_anchor_templates(base_size, aspect_ratios, scales), stride=stride, offset=offset)


@dataclass(frozen=True)
class AnchorGrid:
    """Anchors of one spec replicated over a ``height x width`` grid."""

    spec: AnchorSpec
    height: int
    width: int
    anchors: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.height < 0 or self.width < 0:
            raise ConfigurationError(f"Feature map shape must be non-negative, got ({self.height}, {self.width}).")
        anchors = np.asarray(_generate_grid_anchors(self.spec, self.height, self.width), dtype=np.float32)
        anchors.setflags(write=False)
        object.__setattr__(self, "anchors", anchors)

    @property
    def anchors_per_location(self) -> int:
        return self.spec.num_templates

    @property
    def num_anchors(self) -> int:
        """Total anchors in the grid, ``height * width * anchors_per_location``."""
        return self.height * self.width * self.anchors_per_location

    @property
    def key(self) -> GridKey:
        return _grid_key(self.spec, self.height, self.width)

    def anchor_at(self, row: int, col: int, template_index: int) -> tuple[float, float, float, float]:
        """Return the anchor box at a grid cell for one template."""
        if not (0 <= row < self.height and 0 <= col < self.width):
            raise IndexError(f"cell ({row}, {col}) is outside a {self.height}x{self.width} grid.")
        if not 0 <= template_index < self.anchors_per_location:
            raise IndexError(f"template index {template_index} is outside [0, {self.anchors_per_location}).")
        width, height = self.spec.templates[template_index]
        center_x = (col + self.spec.offset) * self.spec.stride
        center_y = (row + self.spec.offset) * self.spec.stride
        return (
            center_x - 0.5 * width,
            center_y - 0.5 * height,
            center_x + 0.5 * width,
            center_y + 0.5 * height,
        )

    def flat_index(self, row: int, col: int, template_index: int) -> int:
        """Position of an anchor within :attr:`anchors`."""
        return (row * self.width + col) * self.anchors_per_location + template_index


def _grid_key(spec: AnchorSpec, height: int, width: int) -> GridKey:
    return (tuple(spec.templates), spec.stride, spec.offset, int(height), int(width))


def _generate_grid_anchors(spec: AnchorSpec, height: int, width: int) -> Float[Array, "num_anchors 4"]:
    """Generate anchors for a single grid in cell-major, template-minor order."""
    if height == 0 or width == 0:
        return jnp.zeros((0, 4), dtype=jnp.float32)

    sizes = jnp.asarray(spec.templates, dtype=jnp.float32)
    half_widths = 0.5 * sizes[:, 0]
    half_heights = 0.5 * sizes[:, 1]
    base_boxes = jnp.stack((-half_widths, -half_heights, half_widths, half_heights), axis=-1)

    grid_x = (jnp.arange(width, dtype=jnp.float32) + spec.offset) * spec.stride
    grid_y = (jnp.arange(height, dtype=jnp.float32) + spec.offset) * spec.stride
    centers_x, centers_y = jnp.meshgrid(grid_x, grid_y, indexing="xy")
    centers = jnp.stack((centers_x.reshape(-1), centers_y.reshape(-1)), axis=-1)

    def shift_base(center: Float[Array, 2]) -> Float[Array, "anchors 4"]:
        center_xyxy = jnp.tile(center, 2)
        return base_boxes + center_xyxy

    anchors = jax.vmap(shift_base)(centers)
    return anchors.reshape(-1, 4)


class AnchorGridCache:
    """Memoises :class:`AnchorGrid` objects by their full configuration.

    Grids are never resized in place; a different spec or grid size always
    builds a new grid.
    """

    def __init__(self) -> None:
        self._grids: dict[GridKey, AnchorGrid] = {}

    def __len__(self) -> int:
        return len(self._grids)

    def get(self, spec: AnchorSpec, height: int, width: int) -> AnchorGrid:
        key = _grid_key(spec, height, width)
        grid = self._grids.get(key)
        if grid is None:
            grid = AnchorGrid(spec, int(height), int(width))
            self._grids[key] = grid
            LOGGER.info(
                "Built anchor grid %dx%d with %d templates at stride %s (%d anchors).",
                height,
                width,
                spec.num_templates,
                spec.stride,
                grid.num_anchors,
            )
        return grid

    def clear(self) -> None:
        self._grids.clear()


__all__ = ["AnchorGrid", "AnchorGridCache", "AnchorSpec", "make_anchor_templates"]
