"""
Split function generators.

Given the reservoir of a leaf that the tree wants to split, a generator
proposes a number of candidate decision functions, scores each by the
information gain of the partition it induces on the reservoir's examples, and
returns the best one (with the two example subsets) if its gain clears the
threshold.

Child entropies are computed from the retained examples with every label
re-weighted by the reservoir's class multiplier, so the gain reflects the
node's true class proportions rather than the reservoir's sampling distortion.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Generic, Hashable, List, Optional, Sequence, TypeVar

import torch

from src.forest.DecisionFunction import (
	DecisionFunction,
	FeatureThresholdingDecisionFunction,
	LinearProjectionDecisionFunction,
)
from src.forest.Example import Example
from src.forest.ExampleReservoir import ExampleReservoir
from src.forest.Histogram import calculate_entropy
from src.forest.RandomNumberGenerator import RandomNumberGenerator

Label = TypeVar("Label", bound=Hashable)

logger = logging.getLogger(__name__)


@dataclass
class Split(Generic[Label]):
	decision_function: DecisionFunction
	left_examples: List[Example[Label]] = field(default_factory=list)
	right_examples: List[Example[Label]] = field(default_factory=list)
	gain: float = 0.0


def _weighted_entropy(examples: Sequence[Example[Label]], multipliers: Dict[Label, float]) -> float:
	counts = defaultdict(float)
	for e in examples:
		counts[e.label] += multipliers.get(e.label, 1.0)
	return calculate_entropy(counts.values())


def _weighted_size(examples: Sequence[Example[Label]], multipliers: Dict[Label, float]) -> float:
	return sum(multipliers.get(e.label, 1.0) for e in examples)


class DecisionFunctionGenerator(ABC, Generic[Label]):
	def __init__(self, rng: RandomNumberGenerator):
		self.rng = rng

	@abstractmethod
	def generate_candidate(self, examples: Sequence[Example[Label]], descriptors: torch.Tensor) -> DecisionFunction:
		"""Propose one candidate decision function for the given examples."""

	def get_type(self) -> str:
		return type(self).__name__

	def split_examples(self, reservoir: ExampleReservoir[Label], candidate_count: int, gain_threshold: float) -> Optional[Split[Label]]:
		examples = reservoir.get_examples()
		if len(examples) < 2:
			return None

		descriptors = torch.stack([e.descriptor for e in examples])
		multipliers = reservoir.get_class_multipliers()
		initial_entropy = reservoir.get_histogram().calculate_entropy()
		total_weight = _weighted_size(examples, multipliers)

		best: Optional[Split[Label]] = None
		for _ in range(candidate_count):
			candidate = self.generate_candidate(examples, descriptors)
			go_left = candidate.classify_descriptors(descriptors).tolist()
			left = [e for e, l in zip(examples, go_left) if l]
			right = [e for e, l in zip(examples, go_left) if not l]
			if not left or not right:
				continue

			left_weight = _weighted_size(left, multipliers)
			right_weight = _weighted_size(right, multipliers)
			gain = initial_entropy \
				- (left_weight / total_weight) * _weighted_entropy(left, multipliers) \
				- (right_weight / total_weight) * _weighted_entropy(right, multipliers)

			if best is None or gain > best.gain:
				best = Split(candidate, left, right, gain)

		if best is None or not best.gain > gain_threshold:
			logger.debug("No candidate split cleared gain threshold %g", gain_threshold)
			return None
		return best


class FeatureThresholdingDecisionFunctionGenerator(DecisionFunctionGenerator[Label]):
	"""Axis-aligned candidates: a random feature thresholded at a random example's value."""

	def generate_candidate(self, examples, descriptors):
		feature_index = self.rng.generate_int_in_range(0, descriptors.shape[1] - 1)
		example_index = self.rng.generate_int_in_range(0, len(examples) - 1)
		threshold = float(descriptors[example_index, feature_index])
		return FeatureThresholdingDecisionFunction(feature_index, threshold)


class LinearProjectionDecisionFunctionGenerator(DecisionFunctionGenerator[Label]):
	"""Oblique candidates: a random unit direction thresholded at a random example's projection."""

	def generate_candidate(self, examples, descriptors):
		size = descriptors.shape[1]
		weights = torch.tensor([self.rng.generate_normal() for _ in range(size)], dtype=torch.float32)
		norm = math.sqrt(float((weights * weights).sum()))
		if norm > 0:
			weights = weights / norm
		example_index = self.rng.generate_int_in_range(0, len(examples) - 1)
		threshold = float(descriptors[example_index].to(torch.float32) @ weights)
		return LinearProjectionDecisionFunction(weights, threshold)


GENERATORS = {
	"feature_thresholding": FeatureThresholdingDecisionFunctionGenerator,
	"linear_projection": LinearProjectionDecisionFunctionGenerator,
}


def make_generator(generator_type: str, rng: RandomNumberGenerator) -> DecisionFunctionGenerator:
	try:
		cls = GENERATORS[generator_type]
	except KeyError:
		raise ValueError(f"Unknown decision function generator '{generator_type}'") from None
	return cls(rng)


__all__ = [
	"Split",
	"DecisionFunctionGenerator",
	"FeatureThresholdingDecisionFunctionGenerator",
	"LinearProjectionDecisionFunctionGenerator",
	"GENERATORS",
	"make_generator",
]
