"""
Synthetic data for the forest benchmarks.

SyntheticLabelledDataset produces labelled descriptor streams with controllable
class proportions. SyntheticScene produces descriptor images whose pixels map to
known 3D scene points, so relocalisation predictions can be checked against a
ground truth.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import numpy as np
import torch

from src.forest.Example import Example, make_examples


@dataclass
class SyntheticLabelledDataset:
	descriptors: np.ndarray
	labels: np.ndarray

	@classmethod
	def gaussian_blobs(
		cls,
		n_examples: int,
		label_count: int = 3,
		dimension: int = 8,
		spread: float = 1.0,
		proportions: Optional[Sequence[float]] = None,
		random_state: Optional[int] = 42,
	) -> "SyntheticLabelledDataset":
		"""One isotropic Gaussian blob per label, blob centres drawn in [-5, 5]^D."""
		rs = np.random.RandomState(random_state)
		if proportions is None:
			proportions = [1.0 / label_count] * label_count
		proportions = np.asarray(proportions, dtype=np.float64)
		if len(proportions) != label_count:
			raise ValueError("Need one proportion per label")
		centres = rs.uniform(-5.0, 5.0, size=(label_count, dimension))
		labels = rs.choice(label_count, size=n_examples, p=proportions / proportions.sum())
		descriptors = centres[labels] + rs.normal(scale=spread, size=(n_examples, dimension))
		return cls(descriptors.astype(np.float32), labels)

	@classmethod
	def uniform_with_ratio(
		cls,
		n_examples: int,
		ratios: Sequence[float] = (0.7, 0.3),
		dimension: int = 4,
		random_state: Optional[int] = 42,
	) -> "SyntheticLabelledDataset":
		"""Labels drawn with the given ratios, descriptors uniform in [0, 1]^D regardless of label."""
		rs = np.random.RandomState(random_state)
		ratios = np.asarray(ratios, dtype=np.float64)
		labels = rs.choice(len(ratios), size=n_examples, p=ratios / ratios.sum())
		descriptors = rs.uniform(0.0, 1.0, size=(n_examples, dimension))
		return cls(descriptors.astype(np.float32), labels)

	def __len__(self) -> int:
		return len(self.labels)

	def examples(self) -> List[Example[int]]:
		return make_examples(self.descriptors, [int(label) for label in self.labels])

	def batches(self, batch_size: int) -> Iterator[List[Example[int]]]:
		examples = self.examples()
		for start in range(0, len(examples), batch_size):
			yield examples[start:start + batch_size]

	def train_test_split(self, test_fraction: float = 0.2):
		n_test = int(len(self) * test_fraction)
		train = SyntheticLabelledDataset(self.descriptors[n_test:], self.labels[n_test:])
		test = SyntheticLabelledDataset(self.descriptors[:n_test], self.labels[:n_test])
		return train, test


@dataclass
class SyntheticScene:
	"""
	A scene in which descriptor features 0..2 encode the 3D point seen at a pixel
	(up to noise), and the remaining features are clutter. Points live in
	[0, extent]^3 and carry a colour derived from their position.
	"""

	dimension: int = 6
	extent: float = 2.0
	noise: float = 0.01

	def sample(self, n: int, random_state: Optional[int] = None):
		"""Returns (descriptors (n, D), points (n, 3), colours (n, 3))."""
		rs = np.random.RandomState(random_state)
		points = rs.uniform(0.0, self.extent, size=(n, 3))
		clutter = rs.uniform(0.0, 1.0, size=(n, self.dimension - 3))
		descriptors = np.concatenate([points / self.extent + rs.normal(scale=self.noise, size=(n, 3)), clutter], axis=1)
		colours = np.clip(points / self.extent * 255.0, 0, 255).astype(np.uint8)
		return (
			torch.from_numpy(descriptors.astype(np.float32)),
			torch.from_numpy(points.astype(np.float32)),
			torch.from_numpy(colours),
		)

	def sample_image(self, height: int, width: int, random_state: Optional[int] = None):
		"""Same as `sample`, reshaped to (H, W, ...) images."""
		descriptors, points, colours = self.sample(height * width, random_state)
		return (
			descriptors.reshape(height, width, -1),
			points.reshape(height, width, 3),
			colours.reshape(height, width, 3),
		)

	def voxel_labels(self, points: torch.Tensor, voxel_size: float) -> List[int]:
		"""Discretises points into voxel ids, used as class labels when growing the trees."""
		cells = int(np.ceil(self.extent / voxel_size))
		idx = torch.clamp((points / voxel_size).floor().to(torch.int64), 0, cells - 1)
		return (idx[:, 0] * cells * cells + idx[:, 1] * cells + idx[:, 2]).tolist()


__all__ = ["SyntheticLabelledDataset", "SyntheticScene"]
