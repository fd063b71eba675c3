"""
Quick-shift clustering of the 3D points that reach a leaf.

Every point gets a Gaussian density estimate; it then links to its nearest
neighbour of strictly higher density if that neighbour lies within `tau`, and
is a cluster root otherwise. The link trees are the clusters. Small clusters
are discarded and the rest, largest first, become the leaf's cluster modes.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import torch

from src.relocalisation.ClusterMode import MAX_CLUSTERS, ClusterMode

logger = logging.getLogger(__name__)


class ExampleClusterer:
	def __init__(self, sigma: float = 0.1, tau: float = 0.05, min_cluster_size: int = 20, max_cluster_count: int = 10):
		if sigma <= 0 or tau <= 0:
			raise ValueError("sigma and tau must be positive")
		if not 0 < max_cluster_count <= MAX_CLUSTERS:
			raise ValueError(f"max_cluster_count must be in [1, {MAX_CLUSTERS}], got {max_cluster_count}")
		self.sigma = sigma
		self.tau = tau
		self.min_cluster_size = min_cluster_size
		self.max_cluster_count = max_cluster_count

	def find_modes(self, points: torch.Tensor, colours: Optional[torch.Tensor] = None) -> List[ClusterMode]:
		points = points.to(torch.float32)
		n = points.shape[0]
		if n == 0:
			return []

		# Exact pairwise distances; the matmul shortcut is too coarse for tightly packed points.
		dists = torch.cdist(points, points, compute_mode="donot_use_mm_for_euclid_dist")
		density = torch.exp(-dists.pow(2) / (2.0 * self.sigma * self.sigma)).sum(dim=1)

		# Nearest strictly denser neighbour within tau, or self.
		denser = density[None, :] > density[:, None]
		candidate_dists = torch.where(denser & (dists < self.tau), dists, torch.full_like(dists, float("inf")))
		nearest_dist, nearest = candidate_dists.min(dim=1)
		parents = torch.where(torch.isfinite(nearest_dist), nearest, torch.arange(n))

		# Follow links up to the roots.
		while True:
			grandparents = parents[parents]
			if torch.equal(grandparents, parents):
				break
			parents = grandparents

		roots, cluster_ids, cluster_sizes = torch.unique(parents, return_inverse=True, return_counts=True)
		order = torch.argsort(cluster_sizes, descending=True, stable=True)

		modes = []
		for c in order.tolist():
			if int(cluster_sizes[c]) < self.min_cluster_size or len(modes) == self.max_cluster_count:
				break
			mask = cluster_ids == c
			modes.append(ClusterMode.from_points(points[mask], None if colours is None else colours[mask]))

		logger.debug("Clustered %d points into %d root(s), kept %d mode(s)", n, len(roots), len(modes))
		return modes


__all__ = ["ExampleClusterer"]
