"""Containers for generated proposals."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import numpy as np
from jaxtyping import Float, Int

from proposax.config import OUTPUT_ATTRIBUTES

ROI_BASE_COLUMNS = ("image_index", "x_min", "y_min", "x_max", "y_max", "score")
_ATTRIBUTE_FIELDS = {"class_id": "class_ids", "group_index": "group_indices", "anchor_index": "anchor_indices"}


@dataclass(frozen=True)
class ProposalGroup:
    """Proposals of one output group, image-major.

    Rows of the same image are contiguous and ordered by descending score,
    or by candidate order when stable ordering was requested.
    """

    index: int
    image_indices: Int[np.ndarray, "num_rois"]
    boxes: Float[np.ndarray, "num_rois 4"]
    scores: Float[np.ndarray, "num_rois"]
    class_ids: Int[np.ndarray, "num_rois"]
    group_indices: Int[np.ndarray, "num_rois"]
    anchor_indices: Int[np.ndarray, "num_rois"]

    def __len__(self) -> int:
        return int(self.scores.shape[0])

    @classmethod
    def empty(cls, index: int) -> ProposalGroup:
        return cls(
            index=index,
            image_indices=np.zeros((0,), dtype=np.int32),
            boxes=np.zeros((0, 4), dtype=np.float32),
            scores=np.zeros((0,), dtype=np.float32),
            class_ids=np.zeros((0,), dtype=np.int32),
            group_indices=np.zeros((0,), dtype=np.int32),
            anchor_indices=np.zeros((0,), dtype=np.int64),
        )

    def for_image(self, image_index: int) -> ProposalGroup:
        """Rows belonging to a single batch image."""
        mask = self.image_indices == image_index
        return ProposalGroup(
            index=self.index,
            image_indices=self.image_indices[mask],
            boxes=self.boxes[mask],
            scores=self.scores[mask],
            class_ids=self.class_ids[mask],
            group_indices=self.group_indices[mask],
            anchor_indices=self.anchor_indices[mask],
        )

    def to_rois(self, attributes: Sequence[str] = ()) -> Float[np.ndarray, "num_rois num_columns"]:
        """Lay proposals out as ``[image_index, x_min, y_min, x_max, y_max, score, *attributes]`` rows."""
        unknown = [name for name in attributes if name not in OUTPUT_ATTRIBUTES]
        if unknown:
            raise ValueError(f"Unknown ROI attributes {unknown}; expected a subset of {OUTPUT_ATTRIBUTES}.")
        columns = [
            self.image_indices[:, None].astype(np.float32),
            self.boxes.astype(np.float32).reshape(-1, 4),
            self.scores[:, None].astype(np.float32),
        ]
        for name in attributes:
            columns.append(getattr(self, _ATTRIBUTE_FIELDS[name])[:, None].astype(np.float32))
        return np.concatenate(columns, axis=1)


@dataclass(frozen=True)
class ProposalOutput:
    """Per-group proposals produced by one forward pass."""

    groups: tuple[ProposalGroup, ...]

    def __len__(self) -> int:
        return len(self.groups)

    def __iter__(self) -> Iterator[ProposalGroup]:
        return iter(self.groups)

    def __getitem__(self, index: int) -> ProposalGroup:
        return self.groups[index]

    @property
    def num_proposals(self) -> int:
        return sum(len(group) for group in self.groups)

    def to_rois(self, attributes: Sequence[str] = ()) -> list[Float[np.ndarray, "num_rois num_columns"]]:
        """ROI rows for every group, in group order."""
        return [group.to_rois(attributes) for group in self.groups]


__all__ = ["ROI_BASE_COLUMNS", "ProposalGroup", "ProposalOutput"]
