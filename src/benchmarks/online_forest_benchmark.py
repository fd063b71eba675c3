"""
CLI entry point to benchmark online random forest training on a synthetic stream.

Examples arrive in batches; after each batch the forest takes one training step
with the configured split budget. Held-out accuracy and forest structure are
reported as the forest grows.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import List

from tqdm import tqdm

from src.benchmarks.synthetic import SyntheticLabelledDataset
from src.forest.DecisionFunctionGenerator import GENERATORS, make_generator
from src.forest.RandomForest import RandomForest
from src.forest.RandomNumberGenerator import RandomNumberGenerator
from src.utils.settings import ForestSettings
from src.utils.tree_visualization import render_tree

logger = logging.getLogger(__name__)


class OnlineForestBenchmarkRunner:
	"""Stream a dataset into a RandomForest and track accuracy per batch."""

	def __init__(self, settings: ForestSettings, n_examples: int, label_count: int, dimension: int, batch_size: int):
		self.settings = settings
		self.n_examples = n_examples
		self.label_count = label_count
		self.dimension = dimension
		self.batch_size = batch_size

	def _build_forest(self) -> RandomForest[int]:
		rng = RandomNumberGenerator(self.settings.seed)
		return RandomForest(
			self.settings.tree_count,
			self.settings.max_reservoir_size,
			self.settings.seen_examples_threshold,
			rng,
			lambda tree_rng: make_generator(self.settings.generator_type, tree_rng),
		)

	@staticmethod
	def accuracy(forest: RandomForest[int], dataset: SyntheticLabelledDataset) -> float:
		if len(dataset) == 0:
			return float("nan")
		correct = sum(1 for e in dataset.examples() if forest.predict(e.descriptor) == e.label)
		return correct / len(dataset)

	def run(self):
		dataset = SyntheticLabelledDataset.gaussian_blobs(
			self.n_examples, label_count=self.label_count, dimension=self.dimension, random_state=self.settings.seed,
		)
		train, test = dataset.train_test_split()
		forest = self._build_forest()

		history: List[dict] = []
		start = time.perf_counter()
		n_batches = (len(train) + self.batch_size - 1) // self.batch_size
		for batch_idx, batch in enumerate(tqdm(train.batches(self.batch_size), total=n_batches, desc="Streaming examples")):
			forest.add_examples(batch)
			splits = forest.train(self.settings.split_budget, self.settings.splittability_threshold)
			history.append({"batch": batch_idx + 1, "splits": splits})
		elapsed = time.perf_counter() - start

		acc = self.accuracy(forest, test)
		node_counts = [forest.get_tree(i).node_count() for i in range(forest.tree_count())]
		depths = [forest.get_tree(i).depth() for i in range(forest.tree_count())]
		logger.info("Trained on %d examples in %.2fs", len(train), elapsed)
		logger.info("Held-out accuracy: %.4f", acc)
		logger.info("Nodes per tree: %s, depths: %s", node_counts, depths)
		return forest, {"accuracy": acc, "seconds": elapsed, "node_counts": node_counts, "depths": depths, "history": history}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(description="Benchmark online random forest training")
	parser.add_argument("--examples", type=int, default=5000, help="Number of synthetic examples")
	parser.add_argument("--labels", type=int, default=3, help="Number of classes")
	parser.add_argument("--dimension", type=int, default=8, help="Descriptor length")
	parser.add_argument("--batch-size", type=int, default=250, help="Examples added per training step")
	parser.add_argument("--trees", type=int, default=5, help="Number of trees in the forest")
	parser.add_argument("--reservoir-size", type=int, default=500, help="Maximum examples retained per leaf")
	parser.add_argument("--seen-threshold", type=int, default=30, help="Examples a leaf must see before it can split")
	parser.add_argument("--split-budget", type=int, default=4, help="Maximum splits per tree per training step")
	parser.add_argument("--splittability-threshold", type=float, default=0.5, help="Minimum splittability for a split")
	parser.add_argument("--generator", default="feature_thresholding", choices=sorted(GENERATORS), help="Split candidate generator")
	parser.add_argument("--seed", type=int, default=42, help="Random seed")
	parser.add_argument("--render-dir", type=str, default=None, help="Optional directory to render tree 0 into")
	parser.add_argument("--print-trees", action="store_true", help="Dump the forest to stdout when done")
	parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
	return parser.parse_args(argv)


def main(argv: list[str] | None = None):
	args = parse_args(argv)
	logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	logger.info("Starting online forest benchmark with %d examples", args.examples)
	settings = ForestSettings(
		tree_count=args.trees,
		max_reservoir_size=args.reservoir_size,
		seen_examples_threshold=args.seen_threshold,
		split_budget=args.split_budget,
		splittability_threshold=args.splittability_threshold,
		generator_type=args.generator,
		seed=args.seed,
	)
	runner = OnlineForestBenchmarkRunner(settings, args.examples, args.labels, args.dimension, args.batch_size)
	try:
		forest, _ = runner.run()
		forest.get_tree(0).analyze_structure(verbose=True)
		if args.print_trees:
			forest.output(sys.stdout)
		if args.render_dir:
			render_tree(forest.get_tree(0), args.render_dir, filename="tree_0", max_depth=6)
	except Exception as exc:
		logger.error("Benchmark failed: %s", exc)
		raise


if __name__ == "__main__":
	main(sys.argv[1:])
