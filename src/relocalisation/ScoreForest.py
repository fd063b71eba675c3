"""
Relocalisation forest in a flat, tensor-friendly layout.

Each tree is stored as parallel per-node tensors. An internal node keeps the
index of its left child (its right child always directly follows it), the
descriptor feature it tests and the threshold; a leaf has left child -1 and
the index of its row in the forest-wide leaf prediction table. Trees are padded
to a common node count so the whole forest is a handful of (T, N) tensors and
a descriptor image can be pushed through it in one vectorised descent.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import List, Optional, Sequence

import torch
from tqdm import tqdm

from src.forest.DecisionFunction import FeatureThresholdingDecisionFunction
from src.forest.DecisionTree import DecisionTree
from src.forest.Example import Example
from src.forest.ExampleReservoir import ExampleReservoir
from src.forest.RandomNumberGenerator import RandomNumberGenerator
from src.relocalisation.ClusterMode import LeafPredictions
from src.relocalisation.ExampleClusterer import ExampleClusterer

logger = logging.getLogger(__name__)


class ScoreForest:
	def __init__(
		self,
		left_child_idx: torch.Tensor,
		feature_idx: torch.Tensor,
		feature_threshold: torch.Tensor,
		leaf_idx: torch.Tensor,
		device=None,
	):
		"""
		:param left_child_idx: (T, N) long, -1 at leaves.
		:param feature_idx: (T, N) long, descriptor feature tested at each internal node.
		:param feature_threshold: (T, N) float, values below the threshold go left.
		:param leaf_idx: (T, N) long, global leaf index at leaves (-1 elsewhere).
		"""
		shapes = {tuple(t.shape) for t in (left_child_idx, feature_idx, feature_threshold, leaf_idx)}
		if len(shapes) != 1 or len(next(iter(shapes))) != 2:
			raise ValueError(f"Node tensors must all have the same (T, N) shape, got {sorted(shapes)}")
		self.device = device
		self.left_child_idx = left_child_idx.to(device=device, dtype=torch.int64)
		self.feature_idx = feature_idx.to(device=device, dtype=torch.int64)
		self.feature_threshold = feature_threshold.to(device=device, dtype=torch.float32)
		self.leaf_idx = leaf_idx.to(device=device, dtype=torch.int64)
		self.leaf_predictions: Optional[LeafPredictions] = None

	@classmethod
	def from_decision_trees(cls, trees: Sequence[DecisionTree], device=None) -> "ScoreForest":
		"""
		Flattens trained online trees whose splitters are axis-aligned thresholds.
		Leaves are numbered tree by tree, in breadth-first order.
		"""
		per_tree = []
		next_leaf = 0
		for tree in trees:
			left, feature, threshold, leaf = [], [], [], []
			# Breadth-first, so flat indices are visited in the order they are handed out
			# and the two children of a node always get consecutive slots.
			queue = deque([tree.root_index])
			flat_count = 1
			while queue:
				node_index = queue.popleft()
				if tree.is_leaf(node_index):
					left.append(-1)
					feature.append(0)
					threshold.append(0.0)
					leaf.append(next_leaf)
					next_leaf += 1
					continue
				splitter = tree.get_splitter(node_index)
				if not isinstance(splitter, FeatureThresholdingDecisionFunction):
					raise ValueError(f"Node {node_index} uses {type(splitter).__name__}; only feature thresholds can be flattened")
				left.append(flat_count)
				feature.append(splitter.feature_index)
				threshold.append(splitter.threshold)
				leaf.append(-1)
				queue.extend(tree.get_children(node_index))
				flat_count += 2
			per_tree.append((left, feature, threshold, leaf))

		node_count = max((len(t[0]) for t in per_tree), default=0)
		def _stack(i, pad, dtype):
			rows = [t[i] + [pad] * (node_count - len(t[i])) for t in per_tree]
			return torch.tensor(rows, dtype=dtype).reshape(len(per_tree), node_count)

		forest = cls(
			_stack(0, -1, torch.int64),
			_stack(1, 0, torch.int64),
			_stack(2, 0.0, torch.float32),
			_stack(3, -1, torch.int64),
			device=device,
		)
		logger.info("Flattened %d tree(s) into a score forest with %d leaves", len(per_tree), next_leaf)
		return forest

	def tree_count(self) -> int:
		return self.left_child_idx.shape[0]

	def leaf_count(self) -> int:
		return int(self.leaf_idx.max().item()) + 1 if self.leaf_idx.numel() else 0

	def find_leaves(self, descriptors: torch.Tensor) -> torch.Tensor:
		"""
		Routes every descriptor through every tree.

		:param descriptors: (..., D) descriptors, e.g. an (H, W, D) image.
		:return: (..., T) global leaf indices; -1 wherever the descriptor contains NaN.
		"""
		descriptors = descriptors.to(device=self.device, dtype=torch.float32)
		batch_shape = descriptors.shape[:-1]
		if self.tree_count() == 0:
			return torch.empty(batch_shape + (0,), dtype=torch.int64, device=descriptors.device)
		flat = descriptors.reshape(-1, descriptors.shape[-1])
		valid = ~torch.isnan(flat).any(dim=1)
		rows = torch.arange(flat.shape[0], device=flat.device)

		leaves = []
		for t in range(self.tree_count()):
			cur = torch.zeros(flat.shape[0], dtype=torch.int64, device=flat.device)
			while True:
				left = self.left_child_idx[t, cur]
				internal = left >= 0
				if not bool(internal.any()):
					break
				values = flat[rows, self.feature_idx[t, cur]]
				go_right = (values >= self.feature_threshold[t, cur]).to(torch.int64)
				cur = torch.where(internal, left + go_right, cur)
			leaves.append(torch.where(valid, self.leaf_idx[t, cur], torch.full_like(cur, -1)))

		return torch.stack(leaves, dim=-1).reshape(batch_shape + (self.tree_count(),))

	def learn_leaf_predictions(
		self,
		descriptors: torch.Tensor,
		points: torch.Tensor,
		clusterer: ExampleClusterer,
		colours: Optional[torch.Tensor] = None,
		max_modes: Optional[int] = None,
		max_points_per_leaf: Optional[int] = None,
		rng: Optional[RandomNumberGenerator] = None,
	) -> LeafPredictions:
		"""
		Fills the leaf table from training data: the scene points whose
		descriptors reach each leaf are clustered into that leaf's modes.

		Clustering is quadratic in the number of points, so a leaf that receives
		more than `max_points_per_leaf` points clusters a reservoir sample of them.
		"""
		max_modes = max_modes or clusterer.max_cluster_count
		if max_points_per_leaf is not None and max_points_per_leaf <= 0:
			raise ValueError(f"max_points_per_leaf must be positive, got {max_points_per_leaf}")
		rng = rng or RandomNumberGenerator()
		leaves = self.find_leaves(descriptors).cpu()
		leaves = leaves.reshape(leaves.shape[:-1].numel(), self.tree_count())
		points = points.reshape(-1, 3).to(torch.float32).cpu()
		colours = None if colours is None else colours.reshape(-1, 3).cpu()
		valid_points = ~torch.isnan(points).any(dim=1)

		predictions: List[list] = [[] for _ in range(self.leaf_count())]
		for t in range(self.tree_count()):
			tree_leaves = leaves[:, t]
			mask = valid_points & (tree_leaves >= 0)
			for leaf in tqdm(torch.unique(tree_leaves[mask]).tolist(), desc=f"Clustering leaves of tree {t}", leave=False):
				sel = torch.nonzero(mask & (tree_leaves == leaf)).flatten()
				if max_points_per_leaf is not None and sel.numel() > max_points_per_leaf:
					logger.debug("Leaf %d received %d points, clustering %d of them", leaf, sel.numel(), max_points_per_leaf)
					sel = self._sample_rows(sel, points, max_points_per_leaf, rng)
				predictions[leaf] = clusterer.find_modes(points[sel], None if colours is None else colours[sel])[:max_modes]

		self.leaf_predictions = LeafPredictions.from_predictions(predictions, max_modes, device=self.device)
		return self.leaf_predictions

	@staticmethod
	def _sample_rows(rows: torch.Tensor, points: torch.Tensor, max_size: int, rng: RandomNumberGenerator) -> torch.Tensor:
		"""Uniform subset of at most `max_size` row indices, drawn by reservoir sampling."""
		reservoir = ExampleReservoir(max_size, rng)
		for row in rows.tolist():
			reservoir.add_example(Example(points[row], row))
		return torch.tensor(sorted(e.label for e in reservoir.get_examples()), dtype=torch.int64)


__all__ = ["ScoreForest"]
