"""
Cluster modes and the containers that hold them.

A ClusterMode is one mode of the distribution of 3D scene coordinates that
reach a leaf of a relocalisation forest: a position with its covariance, a mean
colour and an inlier count (its weight). A ScorePrediction is a short bounded
list of modes, used both as the payload of a leaf and as the merged result for a
pixel.

For batched work the modes are kept in dense tensor tables: LeafPredictions is
indexed by leaf, ScorePredictionsImage by pixel. Slots at or beyond a row's
`sizes` entry are padding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import torch

# Upper bound on the number of modes in any single prediction.
MAX_CLUSTERS = 50

# Ridge added to covariances estimated from very few points.
COVARIANCE_EPSILON = 1e-6


@dataclass
class ClusterMode:
	position: torch.Tensor
	colour: torch.Tensor
	nb_inliers: int
	position_covariance: torch.Tensor
	position_inv_covariance: torch.Tensor
	determinant: float

	@classmethod
	def from_points(cls, points: torch.Tensor, colours: Optional[torch.Tensor] = None) -> "ClusterMode":
		"""Summarise a (N, 3) set of points (and optional (N, 3) colours) as one mode."""
		points = points.to(torch.float32)
		n = points.shape[0]
		if n == 0:
			raise ValueError("Cannot build a cluster mode from zero points")
		position = points.mean(dim=0)
		centred = points - position
		covariance = centred.T @ centred / max(n - 1, 1)
		covariance = covariance + COVARIANCE_EPSILON * torch.eye(3)
		if colours is None:
			colour = torch.zeros(3, dtype=torch.uint8)
		else:
			colour = colours.to(torch.float32).mean(dim=0).round().clamp(0, 255).to(torch.uint8)
		return cls(
			position=position,
			colour=colour,
			nb_inliers=int(n),
			position_covariance=covariance,
			position_inv_covariance=torch.linalg.inv(covariance),
			determinant=float(torch.linalg.det(covariance)),
		)

	@classmethod
	def at(cls, position: Sequence[float], nb_inliers: int, colour: Sequence[int] = (0, 0, 0), sigma: float = 0.01) -> "ClusterMode":
		"""A mode with an isotropic covariance, mostly useful for building tables by hand."""
		covariance = torch.eye(3) * sigma * sigma
		return cls(
			position=torch.tensor(position, dtype=torch.float32),
			colour=torch.tensor(colour, dtype=torch.uint8),
			nb_inliers=int(nb_inliers),
			position_covariance=covariance,
			position_inv_covariance=torch.linalg.inv(covariance),
			determinant=float(torch.linalg.det(covariance)),
		)


class ScorePrediction:
	def __init__(self, modes: Iterable[ClusterMode] = (), capacity: int = MAX_CLUSTERS):
		self.capacity = capacity
		self.modes: List[ClusterMode] = list(modes)
		if len(self.modes) > capacity:
			raise ValueError(f"A prediction holds at most {capacity} modes, got {len(self.modes)}")

	@property
	def size(self) -> int:
		return len(self.modes)

	def __len__(self) -> int:
		return len(self.modes)

	def __iter__(self) -> Iterator[ClusterMode]:
		return iter(self.modes)

	def __getitem__(self, index: int) -> ClusterMode:
		return self.modes[index]


class _ModeTable:
	"""Dense tensor storage for a grid of bounded mode lists."""

	def __init__(self, shape: Tuple[int, ...], max_modes: int, device=None):
		self.max_modes = max_modes
		self.device = device
		self._allocate(tuple(shape))

	def _allocate(self, shape: Tuple[int, ...]) -> None:
		k = self.max_modes
		self.shape = shape
		self.positions = torch.zeros(shape + (k, 3), dtype=torch.float32, device=self.device)
		self.colours = torch.zeros(shape + (k, 3), dtype=torch.uint8, device=self.device)
		self.inliers = torch.zeros(shape + (k,), dtype=torch.int64, device=self.device)
		self.covariances = torch.zeros(shape + (k, 3, 3), dtype=torch.float32, device=self.device)
		self.inv_covariances = torch.zeros(shape + (k, 3, 3), dtype=torch.float32, device=self.device)
		self.determinants = torch.zeros(shape + (k,), dtype=torch.float32, device=self.device)
		self.sizes = torch.zeros(shape, dtype=torch.int64, device=self.device)

	def _set_row(self, index: Tuple[int, ...], prediction: Sequence[ClusterMode]) -> None:
		if len(prediction) > self.max_modes:
			raise ValueError(f"Row {index} has {len(prediction)} modes but the table holds at most {self.max_modes}")
		for k, mode in enumerate(prediction):
			self.positions[index + (k,)] = mode.position
			self.colours[index + (k,)] = mode.colour
			self.inliers[index + (k,)] = mode.nb_inliers
			self.covariances[index + (k,)] = mode.position_covariance
			self.inv_covariances[index + (k,)] = mode.position_inv_covariance
			self.determinants[index + (k,)] = mode.determinant
		self.sizes[index] = len(prediction)

	def _get_row(self, index: Tuple[int, ...]) -> ScorePrediction:
		modes = []
		for k in range(int(self.sizes[index])):
			modes.append(ClusterMode(
				position=self.positions[index + (k,)].clone(),
				colour=self.colours[index + (k,)].clone(),
				nb_inliers=int(self.inliers[index + (k,)]),
				position_covariance=self.covariances[index + (k,)].clone(),
				position_inv_covariance=self.inv_covariances[index + (k,)].clone(),
				determinant=float(self.determinants[index + (k,)]),
			))
		return ScorePrediction(modes, capacity=self.max_modes)


class LeafPredictions(_ModeTable):
	"""Per-leaf mode lists for a whole forest, row i belonging to global leaf i."""

	def __init__(self, leaf_count: int, max_modes: int, device=None):
		super().__init__((leaf_count,), max_modes, device)

	@classmethod
	def from_predictions(cls, predictions: Sequence[Iterable[ClusterMode]], max_modes: int, device=None) -> "LeafPredictions":
		table = cls(len(predictions), max_modes, device)
		for leaf, prediction in enumerate(predictions):
			table.set_prediction(leaf, list(prediction))
		return table

	def leaf_count(self) -> int:
		return self.shape[0]

	def set_prediction(self, leaf: int, prediction: Sequence[ClusterMode]) -> None:
		self._set_row((leaf,), prediction)

	def get_prediction(self, leaf: int) -> ScorePrediction:
		return self._get_row((leaf,))


class ScorePredictionsImage(_ModeTable):
	"""Per-pixel merged predictions, indexed as [y, x]."""

	def __init__(self, height: int = 0, width: int = 0, max_modes: int = MAX_CLUSTERS, device=None):
		super().__init__((height, width), max_modes, device)

	@property
	def height(self) -> int:
		return self.shape[0]

	@property
	def width(self) -> int:
		return self.shape[1]

	def change_dims(self, height: int, width: int) -> bool:
		"""Resize to (height, width); returns whether storage was reallocated."""
		if (height, width) == self.shape:
			return False
		self._allocate((height, width))
		return True

	def get_prediction(self, x: int, y: int) -> ScorePrediction:
		return self._get_row((y, x))

	def set_prediction(self, x: int, y: int, prediction: Sequence[ClusterMode]) -> None:
		self._set_row((y, x), prediction)
		k = len(prediction)
		self.inliers[y, x, k:] = 0
		self.sizes[y, x] = k


__all__ = [
	"MAX_CLUSTERS",
	"ClusterMode",
	"ScorePrediction",
	"LeafPredictions",
	"ScorePredictionsImage",
]
