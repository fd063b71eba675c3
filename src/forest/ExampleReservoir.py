"""
Bounded per-node storage of training examples.

The reservoir keeps a uniform random sample of at most `max_size` of the
examples that have reached a node, plus a histogram over *all* of them. The
gap between the two lets a split re-inflate the retained sample back towards
the true class proportions (see DecisionTree._fill_reservoir).
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Generic, Hashable, List, TypeVar

from src.forest.Example import Example
from src.forest.Histogram import Histogram
from src.forest.RandomNumberGenerator import RandomNumberGenerator

Label = TypeVar("Label", bound=Hashable)


class ExampleReservoir(Generic[Label]):
	def __init__(self, max_size: int, rng: RandomNumberGenerator):
		if max_size < 0:
			raise ValueError(f"Reservoir size must be non-negative, got {max_size}")
		self._max_size = max_size
		self._rng = rng
		self._examples: List[Example[Label]] = []
		self._histogram: Histogram[Label] = Histogram()
		self._seen_examples = 0

	def add_example(self, example: Example[Label]) -> bool:
		"""
		Adds an example, returning whether the retained sample changed.

		Once the reservoir is full, the n-th example replaces a random retained
		one with probability max_size / n, so every example seen so far is
		equally likely to be retained.
		"""
		self._histogram.add(example.label)
		self._seen_examples += 1

		if len(self._examples) < self._max_size:
			self._examples.append(example)
			return True

		k = self._rng.generate_int_in_range(0, self._seen_examples - 1)
		if k < self._max_size:
			self._examples[k] = example
			return True
		return False

	def clear(self) -> None:
		self._examples = []
		self._histogram.clear()
		self._seen_examples = 0

	def get_class_multipliers(self) -> Dict[Label, float]:
		"""Per-label ratio of all-time count to retained count (labels with retained samples only)."""
		retained = Counter(e.label for e in self._examples)
		bins = self._histogram.get_bins()
		return {label: bins[label] / count for label, count in retained.items() if label in bins}

	def get_examples(self) -> List[Example[Label]]:
		return list(self._examples)

	def get_histogram(self) -> Histogram[Label]:
		return self._histogram

	def seen_examples(self) -> int:
		return self._seen_examples

	def current_size(self) -> int:
		return len(self._examples)

	def max_size(self) -> int:
		return self._max_size

	def __len__(self) -> int:
		return len(self._examples)


__all__ = ["ExampleReservoir"]
