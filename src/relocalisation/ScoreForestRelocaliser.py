"""
Per-pixel merging of score forest leaf predictions.

Every pixel of an image has one leaf per tree. Each of those leaves carries a
short list of cluster modes; the relocaliser fuses them into a single list of
at most `max_cluster_count` modes per pixel, which is what the pose solver
consumes downstream.

If a pixel's candidates already fit, they are all kept. Otherwise:

*   "rank" keeps the modes with the most inliers. With every leaf list sorted by
	inliers this is the same as a k-way merge of the tree lists.
*   "proximity" first folds together candidates whose positions lie within
	`merge_radius` of each other (heaviest first), then ranks the survivors.

Pixels never share state, so the rank policy is computed for whole blocks of
pixels at once; the proximity policy only revisits the pixels that overflow.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional

import torch

from src.relocalisation.ClusterMode import ClusterMode, LeafPredictions, ScorePrediction, ScorePredictionsImage
from src.relocalisation.ScoreForest import ScoreForest
from src.utils.settings import RelocaliserSettings

logger = logging.getLogger(__name__)

# Pixels processed per vectorised block.
PIXEL_BLOCK_SIZE = 16384


class ScoreForestRelocaliser:
	def __init__(self, settings: Optional[RelocaliserSettings] = None, forest: Optional[ScoreForest] = None):
		self.settings = settings or RelocaliserSettings()
		self.forest = forest
		self.max_cluster_count = self.settings.max_cluster_count
		self.merge_policy = self.settings.merge_policy
		self.merge_radius = self.settings.merge_radius
		self.device = self.settings.device
		self.predictions_image = ScorePredictionsImage(0, 0, self.max_cluster_count, device=self.device)

	# --- public API ---
	def predict(self, descriptors: torch.Tensor) -> ScorePredictionsImage:
		"""Routes an (H, W, D) descriptor image through the forest and merges the leaf predictions."""
		if self.forest is None or self.forest.leaf_predictions is None:
			raise ValueError("predict() needs a forest whose leaf predictions have been learned")
		leaf_indices = self.forest.find_leaves(descriptors)
		return self.merge_predictions_for_keypoints(leaf_indices, self.forest.leaf_predictions)

	def merge_predictions_for_keypoints(self, leaf_indices: torch.Tensor, leaf_predictions: LeafPredictions) -> ScorePredictionsImage:
		"""
		:param leaf_indices: (H, W, T) leaf index of every pixel in every tree (-1 for none).
		:param leaf_predictions: the forest's leaf table.
		:return: the relocaliser's (H, W) predictions image, resized if needed.
		"""
		if leaf_indices.ndim != 3:
			raise ValueError(f"Leaf indices must be (H, W, T), got shape {tuple(leaf_indices.shape)}")
		height, width, tree_count = leaf_indices.shape
		if self.predictions_image.change_dims(height, width):
			logger.debug("Resized predictions image to %dx%d", width, height)

		out = self.predictions_image
		if tree_count == 0 or height * width == 0:
			# No trees means no evidence for any pixel.
			out.sizes.zero_()
			out.inliers.zero_()
			return out

		flat_indices = leaf_indices.reshape(-1, tree_count).to(device=leaf_predictions.inliers.device, dtype=torch.int64)
		overflow = []
		for start in range(0, flat_indices.shape[0], PIXEL_BLOCK_SIZE):
			block = flat_indices[start:start + PIXEL_BLOCK_SIZE]
			candidate_counts = self._rank_block(block, leaf_predictions, start)
			if self.merge_policy == "proximity":
				overflow.extend((start + torch.nonzero(candidate_counts > self.max_cluster_count).flatten()).tolist())

		for p in overflow:
			y, x = divmod(p, width)
			out.set_prediction(x, y, self.merge_predictions_for_keypoint(x, y, leaf_indices, leaf_predictions))

		return out

	def merge_predictions_for_keypoint(self, x: int, y: int, leaf_indices: torch.Tensor, leaf_predictions: LeafPredictions) -> List[ClusterMode]:
		"""Merged modes for a single pixel, heaviest first."""
		candidates: List[ClusterMode] = []
		for leaf in leaf_indices[y, x].tolist():
			if leaf < 0:
				continue
			candidates.extend(m for m in leaf_predictions.get_prediction(leaf) if m.nb_inliers > 0)
		candidates.sort(key=lambda m: -m.nb_inliers)

		if len(candidates) <= self.max_cluster_count or self.merge_policy == "rank":
			return candidates[:self.max_cluster_count]

		kept: List[ClusterMode] = []
		for mode in candidates:
			for i, k in enumerate(kept):
				if float(torch.linalg.norm(mode.position - k.position)) <= self.merge_radius:
					kept[i] = self._fold(k, mode)
					break
			else:
				kept.append(mode)
		kept.sort(key=lambda m: -m.nb_inliers)
		return kept[:self.max_cluster_count]

	def get_predictions_for_pixel(self, x: int, y: int) -> ScorePrediction:
		return self.predictions_image.get_prediction(x, y)

	# --- internals ---
	def _rank_block(self, block: torch.Tensor, table: LeafPredictions, start: int) -> torch.Tensor:
		"""Rank-merges a (P, T) block of pixels straight into the output image; returns per-pixel candidate counts."""
		n_pixels, tree_count = block.shape
		k = table.max_modes
		m = self.max_cluster_count

		has_leaf = block >= 0
		leaves = block.clamp(min=0)
		slot = torch.arange(k, device=block.device)
		valid = has_leaf[..., None] & (slot < table.sizes[leaves][..., None]) & (table.inliers[leaves] > 0)
		valid = valid.reshape(n_pixels, tree_count * k)

		weights = torch.where(valid, table.inliers[leaves].reshape(n_pixels, -1), torch.full_like(valid, -1, dtype=torch.int64))
		order = torch.argsort(weights, dim=1, descending=True, stable=True)[:, :m]
		kept = order.shape[1]
		counts = valid.sum(dim=1)

		def _take(field: torch.Tensor) -> torch.Tensor:
			flat = field[leaves].reshape((n_pixels, tree_count * k) + field.shape[2:])
			index = order.reshape(order.shape + (1,) * (flat.ndim - 2)).expand(order.shape + flat.shape[2:])
			return torch.gather(flat, 1, index)

		out = self.predictions_image
		rows = slice(start, start + n_pixels)
		for name in ("positions", "colours", "inliers", "covariances", "inv_covariances", "determinants"):
			dest = getattr(out, name).view((-1,) + getattr(out, name).shape[2:])
			dest[rows, :kept] = _take(getattr(table, name))
			dest[rows, kept:] = 0
		sizes = counts.clamp(max=m)
		out.sizes.view(-1)[rows] = sizes
		# Padding slots carry no weight.
		unused = torch.arange(m, device=sizes.device)[None, :] >= sizes[:, None]
		out.inliers.view(-1, m)[rows].masked_fill_(unused, 0)
		return counts

	@staticmethod
	def _fold(heavier: ClusterMode, lighter: ClusterMode) -> ClusterMode:
		a, b = heavier.nb_inliers, lighter.nb_inliers
		total = a + b
		position = (a * heavier.position + b * lighter.position) / total
		colour = ((a * heavier.colour.to(torch.float32) + b * lighter.colour.to(torch.float32)) / total).round().to(torch.uint8)
		return dataclasses.replace(heavier, position=position, colour=colour, nb_inliers=total)


__all__ = ["ScoreForestRelocaliser"]
