"""
A random forest of online decision trees.

Every tree sees every example; the randomness comes from each tree owning its
own random number generator (seeded from the forest's), which drives both its
reservoir sampling and its candidate splits.
"""

from __future__ import annotations

import logging
import sys
from collections import defaultdict
from typing import Callable, Generic, Hashable, Iterable, List, Optional, TextIO, TypeVar

from src.forest.DecisionFunctionGenerator import DecisionFunctionGenerator, make_generator
from src.forest.DecisionTree import DecisionTree
from src.forest.Example import Descriptor, Example
from src.forest.Histogram import ProbabilityMassFunction
from src.forest.RandomNumberGenerator import RandomNumberGenerator

Label = TypeVar("Label", bound=Hashable)

logger = logging.getLogger(__name__)


class RandomForest(Generic[Label]):
	def __init__(
		self,
		tree_count: int,
		max_reservoir_size: int,
		seen_examples_threshold: int,
		rng: RandomNumberGenerator,
		generator_factory: Callable[[RandomNumberGenerator], DecisionFunctionGenerator[Label]] = None,
	):
		if tree_count <= 0:
			raise ValueError(f"A forest needs at least one tree, got {tree_count}")
		if generator_factory is None:
			generator_factory = lambda tree_rng: make_generator("feature_thresholding", tree_rng)
		self.rng = rng
		self.trees: List[DecisionTree[Label]] = []
		for _ in range(tree_count):
			tree_rng = RandomNumberGenerator(rng.spawn_seed())
			self.trees.append(DecisionTree(max_reservoir_size, seen_examples_threshold, tree_rng, generator_factory(tree_rng)))

	def add_examples(self, examples: Iterable[Example[Label]]) -> None:
		examples = list(examples)
		for tree in self.trees:
			tree.add_examples(examples)

	def train(self, split_budget: int, splittability_threshold: float = 0.5) -> int:
		nodes_split = sum(tree.train(split_budget, splittability_threshold) for tree in self.trees)
		logger.info("Forest training step split %d node(s) across %d tree(s)", nodes_split, len(self.trees))
		return nodes_split

	def calculate_pmf(self, descriptor: Descriptor) -> ProbabilityMassFunction[Label]:
		"""Average of the trees' leaf distributions for the descriptor."""
		masses = defaultdict(float)
		for tree in self.trees:
			for label, mass in tree.lookup_pmf(descriptor).get_masses().items():
				masses[label] += mass / len(self.trees)
		return ProbabilityMassFunction(masses=dict(masses))

	def predict(self, descriptor: Descriptor) -> Optional[Label]:
		return self.calculate_pmf(descriptor).calculate_best_label()

	def output(self, stream: Optional[TextIO] = None) -> None:
		stream = stream if stream is not None else sys.stdout
		for i, tree in enumerate(self.trees):
			stream.write(f"Tree {i}:\n")
			tree.output(stream)
			stream.write("\n")

	def get_tree(self, index: int) -> DecisionTree[Label]:
		return self.trees[index]

	def tree_count(self) -> int:
		return len(self.trees)


__all__ = ["RandomForest"]
