"""
Decision functions (splitters) stored at the internal nodes of a tree.

A decision function sends a descriptor either LEFT or RIGHT. The tree never
looks inside one beyond that contract, so new kinds only need to implement
`classify_descriptors`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import torch

from src.forest.Example import Descriptor


class DescriptorClassification(Enum):
	LEFT = "left"
	RIGHT = "right"


LEFT = DescriptorClassification.LEFT
RIGHT = DescriptorClassification.RIGHT


class DecisionFunction(ABC):
	@abstractmethod
	def classify_descriptors(self, descriptors: torch.Tensor) -> torch.Tensor:
		"""Boolean mask over a (N, D) batch, True where a descriptor goes LEFT."""

	def classify_descriptor(self, descriptor: Descriptor) -> DescriptorClassification:
		go_left = self.classify_descriptors(descriptor.unsqueeze(0))[0]
		return LEFT if bool(go_left) else RIGHT


class FeatureThresholdingDecisionFunction(DecisionFunction):
	"""Axis-aligned split: descriptor[feature_index] < threshold goes LEFT."""

	def __init__(self, feature_index: int, threshold: float):
		self.feature_index = int(feature_index)
		self.threshold = float(threshold)

	def classify_descriptors(self, descriptors: torch.Tensor) -> torch.Tensor:
		return descriptors[:, self.feature_index] < self.threshold

	def classify_descriptor(self, descriptor: Descriptor) -> DescriptorClassification:
		return LEFT if float(descriptor[self.feature_index]) < self.threshold else RIGHT

	def __str__(self) -> str:
		return f"Feature {self.feature_index} < {self.threshold:g}"


class LinearProjectionDecisionFunction(DecisionFunction):
	"""Oblique split: dot(weights, descriptor) < threshold goes LEFT."""

	def __init__(self, weights: torch.Tensor, threshold: float):
		self.weights = weights.detach().to(dtype=torch.float32)
		self.threshold = float(threshold)

	def classify_descriptors(self, descriptors: torch.Tensor) -> torch.Tensor:
		return descriptors.to(self.weights.dtype) @ self.weights < self.threshold

	def __str__(self) -> str:
		weights = ", ".join(f"{w:.3f}" for w in self.weights.tolist())
		return f"[{weights}] . x < {self.threshold:g}"


__all__ = [
	"DecisionFunction",
	"DescriptorClassification",
	"FeatureThresholdingDecisionFunction",
	"LinearProjectionDecisionFunction",
	"LEFT",
	"RIGHT",
]
