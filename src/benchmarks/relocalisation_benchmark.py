"""
CLI entry point to benchmark the score forest relocalisation pipeline on a
synthetic scene.

Trees are grown online with voxel ids as labels, flattened into a score forest,
and their leaves consolidated into cluster modes. A test image is then pushed
through the forest and the per-pixel merged predictions are checked against the
known scene points.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

import torch
from tqdm import tqdm

from src.benchmarks.synthetic import SyntheticScene
from src.forest.DecisionFunctionGenerator import make_generator
from src.forest.Example import make_examples
from src.forest.RandomForest import RandomForest
from src.forest.RandomNumberGenerator import RandomNumberGenerator
from src.relocalisation.ExampleClusterer import ExampleClusterer
from src.relocalisation.ScoreForest import ScoreForest
from src.relocalisation.ScoreForestRelocaliser import ScoreForestRelocaliser
from src.utils.settings import ForestSettings, RelocaliserSettings

logger = logging.getLogger(__name__)


class RelocalisationBenchmarkRunner:
	def __init__(self, forest_settings: ForestSettings, reloc_settings: RelocaliserSettings, n_train: int, batch_size: int, voxel_size: float, image_size: int):
		self.forest_settings = forest_settings
		self.reloc_settings = reloc_settings
		self.n_train = n_train
		self.batch_size = batch_size
		self.voxel_size = voxel_size
		self.image_size = image_size
		self.scene = SyntheticScene()

	def grow_forest(self, descriptors: torch.Tensor, points: torch.Tensor) -> RandomForest[int]:
		fs = self.forest_settings
		forest = RandomForest(
			fs.tree_count,
			fs.max_reservoir_size,
			fs.seen_examples_threshold,
			RandomNumberGenerator(fs.seed),
			lambda tree_rng: make_generator("feature_thresholding", tree_rng),
		)
		examples = make_examples(descriptors, self.scene.voxel_labels(points, self.voxel_size))
		for start in tqdm(range(0, len(examples), self.batch_size), desc="Growing trees"):
			forest.add_examples(examples[start:start + self.batch_size])
			forest.train(fs.split_budget, fs.splittability_threshold)
		return forest

	def run(self):
		rs = self.reloc_settings
		descriptors, points, colours = self.scene.sample(self.n_train, random_state=self.forest_settings.seed)
		forest = self.grow_forest(descriptors, points)

		score_forest = ScoreForest.from_decision_trees(forest.trees, device=rs.device)
		clusterer = ExampleClusterer(rs.clusterer_sigma, rs.clusterer_tau, rs.min_cluster_size, rs.max_modes_per_leaf)
		score_forest.learn_leaf_predictions(
			descriptors, points, clusterer, colours=colours, max_modes=rs.max_modes_per_leaf,
			max_points_per_leaf=rs.max_points_per_leaf, rng=forest.rng,
		)

		relocaliser = ScoreForestRelocaliser(rs, forest=score_forest)
		test_descriptors, test_points, _ = self.scene.sample_image(self.image_size, self.image_size, random_state=1)
		start = time.perf_counter()
		predictions = relocaliser.predict(test_descriptors)
		elapsed = time.perf_counter() - start

		sizes = predictions.sizes.to(torch.float32)
		dists = torch.linalg.norm(predictions.positions - test_points.to(predictions.positions.device)[:, :, None, :], dim=-1)
		occupied = torch.arange(predictions.max_modes, device=sizes.device)[None, None, :] < predictions.sizes[..., None]
		dists = torch.where(occupied, dists, torch.full_like(dists, float("inf")))
		hit_rate = float((dists.min(dim=-1).values < 2 * self.voxel_size).to(torch.float32).mean())

		stats = {
			"leaves": score_forest.leaf_count(),
			"merge_seconds": elapsed,
			"mean_modes_per_pixel": float(sizes.mean()),
			"empty_pixels": int((predictions.sizes == 0).sum()),
			"hit_rate": hit_rate,
		}
		logger.info("Merged %dx%d predictions in %.3fs", self.image_size, self.image_size, elapsed)
		logger.info("Stats: %s", stats)
		return stats


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(description="Benchmark score forest relocalisation on a synthetic scene")
	parser.add_argument("--train-examples", type=int, default=20000, help="Number of training pixels")
	parser.add_argument("--batch-size", type=int, default=1000, help="Examples added per training step")
	parser.add_argument("--trees", type=int, default=5, help="Number of trees")
	parser.add_argument("--reservoir-size", type=int, default=500, help="Maximum examples retained per leaf")
	parser.add_argument("--seen-threshold", type=int, default=50, help="Examples a leaf must see before it can split")
	parser.add_argument("--split-budget", type=int, default=8, help="Maximum splits per tree per training step")
	parser.add_argument("--voxel-size", type=float, default=0.25, help="Voxel size used to label training points")
	parser.add_argument("--image-size", type=int, default=64, help="Side length of the test image")
	parser.add_argument("--max-clusters", type=int, default=50, help="Maximum merged modes per pixel")
	parser.add_argument("--merge-policy", default="rank", choices=["rank", "proximity"], help="How to reduce overflowing pixels")
	parser.add_argument("--merge-radius", type=float, default=0.05, help="Distance under which modes are folded together (proximity policy)")
	parser.add_argument("--min-cluster-size", type=int, default=5, help="Smallest cluster kept as a leaf mode")
	parser.add_argument("--max-points-per-leaf", type=int, default=2000, help="Points clustered per leaf; larger leaves are subsampled")
	parser.add_argument("--seed", type=int, default=42, help="Random seed")
	parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
	return parser.parse_args(argv)


def main(argv: list[str] | None = None):
	args = parse_args(argv)
	logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	logger.info("Starting relocalisation benchmark with %d training examples", args.train_examples)
	forest_settings = ForestSettings(
		tree_count=args.trees,
		max_reservoir_size=args.reservoir_size,
		seen_examples_threshold=args.seen_threshold,
		split_budget=args.split_budget,
		seed=args.seed,
	)
	reloc_settings = RelocaliserSettings(
		max_cluster_count=args.max_clusters,
		merge_policy=args.merge_policy,
		merge_radius=args.merge_radius,
		min_cluster_size=args.min_cluster_size,
		max_points_per_leaf=args.max_points_per_leaf,
	)
	runner = RelocalisationBenchmarkRunner(forest_settings, reloc_settings, args.train_examples, args.batch_size, args.voxel_size, args.image_size)
	try:
		runner.run()
	except Exception as exc:
		logger.error("Benchmark failed: %s", exc)
		raise


if __name__ == "__main__":
	main(sys.argv[1:])
