"""
Online decision tree suitable for use in a random forest.

The tree grows incrementally. Examples are routed to leaves and stored in
bounded per-leaf reservoirs; leaves are ranked by splittability (the entropy of
their label histogram once enough examples have been seen); each training step
splits the best-ranked leaves, up to a budget, using a pluggable decision
function generator.

Nodes live in a flat list and refer to their children by index, so the tree is
acyclic by construction. A node is a leaf until it is split and never goes back.
"""

from __future__ import annotations

import logging
import sys
from collections import defaultdict, deque
from typing import Dict, Generic, Hashable, Iterable, List, Optional, Set, TextIO, Tuple, TypeVar

from src.forest.DecisionFunction import LEFT, DecisionFunction
from src.forest.DecisionFunctionGenerator import DecisionFunctionGenerator
from src.forest.Example import Descriptor, Example, make_descriptor
from src.forest.ExampleReservoir import ExampleReservoir
from src.forest.Histogram import ProbabilityMassFunction
from src.forest.PriorityQueue import Element, PriorityQueue
from src.forest.RandomNumberGenerator import RandomNumberGenerator

Label = TypeVar("Label", bound=Hashable)

logger = logging.getLogger(__name__)

NO_CHILD = -1


class DecisionTreeNode(Generic[Label]):
	def __init__(self, max_reservoir_size: int, rng: RandomNumberGenerator):
		self.left_child_index = NO_CHILD
		self.right_child_index = NO_CHILD
		self.reservoir: ExampleReservoir[Label] = ExampleReservoir(max_reservoir_size, rng)
		self.splitter: Optional[DecisionFunction] = None

	def is_leaf(self) -> bool:
		return self.left_child_index == NO_CHILD


class DecisionTree(Generic[Label]):
	# Fixed parameters of a split attempt.
	CANDIDATE_COUNT = 5
	GAIN_THRESHOLD = 0.0

	def __init__(
		self,
		max_reservoir_size: int,
		seen_examples_threshold: int,
		rng: RandomNumberGenerator,
		decision_function_generator: DecisionFunctionGenerator[Label],
	):
		"""
		:param max_reservoir_size: Maximum number of examples retained in a leaf's reservoir.
		:param seen_examples_threshold: Number of examples a leaf must have seen before it can be split.
		:param rng: Random number generator shared by the tree's reservoirs and resampling.
		:param decision_function_generator: Proposes splits for leaves.
		"""
		if seen_examples_threshold < 0:
			raise ValueError(f"seen_examples_threshold must be non-negative, got {seen_examples_threshold}")
		self.max_reservoir_size = max_reservoir_size
		self.seen_examples_threshold = seen_examples_threshold
		self.rng = rng
		self.decision_function_generator = decision_function_generator

		self.nodes: List[DecisionTreeNode[Label]] = []
		self.dirty_nodes: Set[int] = set()
		self.splittability_queue = PriorityQueue()
		self.root_index = self._add_node()

	# --- training ---
	def add_examples(self, examples: Iterable[Example[Label]]) -> None:
		for example in examples:
			self._add_example(example)

		# Splittability is recalculated once per touched leaf, not once per example.
		for node_index in sorted(self.dirty_nodes):
			self._update_splittability(node_index)
		self.dirty_nodes.clear()

	def train(self, split_budget: int, splittability_threshold: float = 0.5) -> int:
		"""
		Splits up to `split_budget` of the most splittable leaves.

		Leaves that cannot be split right now are set aside and only re-added once
		the step is over, so a stubborn leaf at the head of the queue cannot block
		the others. Returns the number of leaves that were split.
		"""
		nodes_split = 0
		elements_to_readd: List[Element] = []
		while not self.splittability_queue.empty() and nodes_split < split_budget:
			e = self.splittability_queue.top()
			if e.key < splittability_threshold:
				break
			self.splittability_queue.pop()
			if self.split_node(e.id):
				nodes_split += 1
			else:
				elements_to_readd.append(e)

		for e in elements_to_readd:
			self.splittability_queue.insert(e.id, e.key, e.data)

		logger.info(
			"Training step split %d node(s) (%d deferred); tree now has %d nodes",
			nodes_split, len(elements_to_readd), len(self.nodes),
		)
		return nodes_split

	def split_node(self, node_index: int) -> bool:
		node = self.nodes[node_index]
		split = self.decision_function_generator.split_examples(node.reservoir, self.CANDIDATE_COUNT, self.GAIN_THRESHOLD)
		if split is None:
			logger.debug("Node %d could not be split", node_index)
			return False

		node.splitter = split.decision_function
		left_index = self._add_node()
		right_index = self._add_node()
		node.left_child_index = left_index
		node.right_child_index = right_index

		multipliers = node.reservoir.get_class_multipliers()
		self._fill_reservoir(split.left_examples, multipliers, self.nodes[left_index].reservoir)
		self._fill_reservoir(split.right_examples, multipliers, self.nodes[right_index].reservoir)

		self._update_splittability(left_index)
		self._update_splittability(right_index)

		node.reservoir.clear()
		logger.debug("Split node %d (%s) into %d and %d with gain %.4f", node_index, node.splitter, left_index, right_index, split.gain)
		return True

	# --- prediction ---
	def find_leaf(self, descriptor: Descriptor) -> int:
		if not hasattr(descriptor, "ndim"):
			descriptor = make_descriptor(descriptor)
		cur = self.root_index
		while not self.nodes[cur].is_leaf():
			node = self.nodes[cur]
			cur = node.left_child_index if node.splitter.classify_descriptor(descriptor) == LEFT else node.right_child_index
		return cur

	def lookup_pmf(self, descriptor: Descriptor) -> ProbabilityMassFunction[Label]:
		return self._make_pmf(self.find_leaf(descriptor))

	# --- output and introspection ---
	def output(self, stream: Optional[TextIO] = None) -> None:
		stream = stream if stream is not None else sys.stdout
		self._output_subtree(stream, self.root_index, "")

	def is_leaf(self, node_index: int) -> bool:
		return self.nodes[node_index].is_leaf()

	def get_children(self, node_index: int) -> Tuple[int, int]:
		node = self.nodes[node_index]
		return node.left_child_index, node.right_child_index

	def get_splitter(self, node_index: int) -> Optional[DecisionFunction]:
		return self.nodes[node_index].splitter

	def get_reservoir(self, node_index: int) -> ExampleReservoir[Label]:
		return self.nodes[node_index].reservoir

	def get_splittability(self, node_index: int) -> float:
		return self.splittability_queue.element(node_index).key

	def node_count(self) -> int:
		return len(self.nodes)

	def leaf_count(self) -> int:
		return sum(1 for n in self.nodes if n.is_leaf())

	def depth(self) -> int:
		_, level_counts, _ = self.analyze_structure(verbose=False)
		return max(level_counts.keys())

	def analyze_structure(self, verbose: bool = True):
		leaf_count = 0
		level_counts: Dict[int, int] = defaultdict(int)
		leaf_counts: Dict[int, int] = defaultdict(int)
		q = deque([(self.root_index, 0)])
		while q:
			node_index, lvl = q.popleft()
			level_counts[lvl] += 1
			node = self.nodes[node_index]
			if node.is_leaf():
				leaf_count += 1
				leaf_counts[lvl] += 1
			else:
				q.append((node.left_child_index, lvl + 1))
				q.append((node.right_child_index, lvl + 1))
		if verbose:
			print(f"\nTotal number of leaf nodes: {leaf_count}\n")
			print("Number of nodes at each level:")
			for lvl in sorted(level_counts.keys()):
				print(f"  Level {lvl}: {level_counts[lvl]} node(s)")
			print("Number of leaves at each level:")
			for lvl in sorted(leaf_counts.keys()):
				print(f"  Level {lvl}: {leaf_counts[lvl]} lea(f/ves)")
		return leaf_count, level_counts, leaf_counts

	# --- internals ---
	def _add_example(self, example: Example[Label]) -> None:
		leaf_index = self.find_leaf(example.descriptor)
		if self.nodes[leaf_index].reservoir.add_example(example):
			self.dirty_nodes.add(leaf_index)

	def _add_node(self) -> int:
		self.nodes.append(DecisionTreeNode(self.max_reservoir_size, self.rng))
		node_index = len(self.nodes) - 1
		self.splittability_queue.insert(node_index, 0.0)
		return node_index

	def _fill_reservoir(self, input_examples: List[Example[Label]], multipliers: Dict[Label, float], reservoir: ExampleReservoir[Label]) -> None:
		"""
		Stratified refill of a child reservoir.

		Each label's share of the split subset is scaled by the parent's class
		multiplier and redrawn with replacement, undoing the class distortion
		introduced by the parent's reservoir sampling.
		"""
		examples_by_label: Dict[Label, List[Example[Label]]] = defaultdict(list)
		for e in input_examples:
			examples_by_label[e.label].append(e)

		for label, group in examples_by_label.items():
			sample_count = int(len(group) * multipliers[label] + 0.5)
			for e in self._sample_examples(group, sample_count):
				reservoir.add_example(e)

	def _sample_examples(self, input_examples: List[Example[Label]], sample_count: int) -> List[Example[Label]]:
		last = len(input_examples) - 1
		return [input_examples[self.rng.generate_int_in_range(0, last)] for _ in range(sample_count)]

	def _make_pmf(self, leaf_index: int) -> ProbabilityMassFunction[Label]:
		return ProbabilityMassFunction(self.nodes[leaf_index].reservoir.get_histogram())

	def _output_subtree(self, stream: TextIO, subtree_root_index: int, indent: str) -> None:
		node = self.nodes[subtree_root_index]
		if node.splitter is not None:
			stream.write(f"{indent}{subtree_root_index}: {node.splitter}\n")
		else:
			stream.write(f"{indent}{subtree_root_index}: {node.reservoir.seen_examples()} {self._make_pmf(subtree_root_index)}\n")
		if node.left_child_index != NO_CHILD:
			self._output_subtree(stream, node.left_child_index, indent + "  ")
		if node.right_child_index != NO_CHILD:
			self._output_subtree(stream, node.right_child_index, indent + "  ")

	def _update_splittability(self, node_index: int) -> None:
		reservoir = self.nodes[node_index].reservoir
		if reservoir.seen_examples() >= self.seen_examples_threshold:
			splittability = reservoir.get_histogram().calculate_entropy()
		else:
			splittability = 0.0
		self.splittability_queue.update_key(node_index, splittability)


__all__ = ["DecisionTree", "DecisionTreeNode", "NO_CHILD"]
