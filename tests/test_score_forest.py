import math

import pytest
import torch

from src.forest.DecisionFunctionGenerator import make_generator
from src.forest.DecisionTree import DecisionTree
from src.forest.RandomNumberGenerator import RandomNumberGenerator
from src.relocalisation.ExampleClusterer import ExampleClusterer
from src.relocalisation.ScoreForest import ScoreForest


def _stump_forest():
	"""One tree: feature 0 < 0.5 goes to leaf 0, otherwise leaf 1."""
	return ScoreForest(
		left_child_idx=torch.tensor([[1, -1, -1]]),
		feature_idx=torch.tensor([[0, 0, 0]]),
		feature_threshold=torch.tensor([[0.5, 0.0, 0.0]]),
		leaf_idx=torch.tensor([[-1, 0, 1]]),
	)


def _grown_trees(stream, generator="feature_thresholding", count=2):
	trees = []
	for seed in range(count):
		rng = RandomNumberGenerator(seed)
		tree = DecisionTree(100, 20, rng, make_generator(generator, rng))
		tree.add_examples(stream)
		tree.train(6)
		trees.append(tree)
	return trees


class TestScoreForest:
	def test_shape_mismatch_rejected(self):
		with pytest.raises(ValueError):
			ScoreForest(torch.zeros(1, 3), torch.zeros(1, 3), torch.zeros(1, 2), torch.zeros(1, 3))

	def test_find_leaves_on_an_image(self):
		forest = _stump_forest()
		image = torch.tensor([[[0.1, 9.0], [0.5, 9.0]], [[0.9, 9.0], [-3.0, 9.0]]])
		leaves = forest.find_leaves(image)
		assert leaves.shape == (2, 2, 1)
		assert leaves[..., 0].tolist() == [[0, 1], [1, 0]]
		assert forest.tree_count() == 1
		assert forest.leaf_count() == 2

	def test_nan_descriptors_get_no_leaf(self):
		forest = _stump_forest()
		image = torch.tensor([[[0.1, math.nan], [0.9, 0.0]]])
		assert forest.find_leaves(image)[..., 0].tolist() == [[-1, 1]]

	def test_flattening_matches_tree_routing(self, ratio_stream):
		trees = _grown_trees(ratio_stream)
		forest = ScoreForest.from_decision_trees(trees)
		assert forest.tree_count() == 2
		assert forest.leaf_count() == sum(t.leaf_count() for t in trees)

		queries = torch.stack([e.descriptor for e in ratio_stream[::7]])
		flat = forest.find_leaves(queries)
		first_tree_leaves = trees[0].leaf_count()
		for t, tree in enumerate(trees):
			mapping = {}
			for d, leaf in zip(queries, flat[:, t].tolist()):
				node = tree.find_leaf(d)
				assert mapping.setdefault(node, leaf) == leaf
			if t == 0:
				assert all(leaf < first_tree_leaves for leaf in mapping.values())
			else:
				assert all(leaf >= first_tree_leaves for leaf in mapping.values())
			# Distinct tree leaves map to distinct flat leaves.
			assert len(set(mapping.values())) == len(mapping)

	def test_right_child_follows_left(self, ratio_stream):
		forest = ScoreForest.from_decision_trees(_grown_trees(ratio_stream, count=1))
		left = forest.left_child_idx[0]
		internal = (left >= 0).nonzero().flatten().tolist()
		assert internal
		children = sorted(int(left[i]) for i in internal)
		assert len(set(children)) == len(children)
		assert all(int(forest.leaf_idx[0, i]) == -1 for i in internal)

	def test_only_feature_thresholds_flatten(self, ratio_stream):
		trees = _grown_trees(ratio_stream, generator="linear_projection", count=1)
		assert trees[0].node_count() > 1
		with pytest.raises(ValueError):
			ScoreForest.from_decision_trees(trees)

	def test_learn_leaf_predictions(self):
		forest = _stump_forest()
		g = torch.Generator().manual_seed(0)
		descriptors = torch.cat([torch.full((40, 2), 0.2), torch.full((40, 2), 0.8)])
		points = torch.cat([
			torch.randn(40, 3, generator=g) * 0.005,
			torch.randn(40, 3, generator=g) * 0.005 + 1.0,
		])
		colours = torch.cat([torch.full((40, 3), 50, dtype=torch.uint8), torch.full((40, 3), 200, dtype=torch.uint8)])
		clusterer = ExampleClusterer(sigma=0.05, tau=0.05, min_cluster_size=5, max_cluster_count=4)
		table = forest.learn_leaf_predictions(descriptors, points, clusterer, colours=colours)

		assert forest.leaf_predictions is table
		assert table.leaf_count() == 2
		assert table.sizes.tolist() == [1, 1]
		near, far = table.get_prediction(0)[0], table.get_prediction(1)[0]
		assert near.nb_inliers == 40 and far.nb_inliers == 40
		assert torch.allclose(near.position, torch.zeros(3), atol=0.01)
		assert torch.allclose(far.position, torch.ones(3), atol=0.01)
		assert far.colour.tolist() == [200, 200, 200]

	def test_large_leaves_are_subsampled_before_clustering(self):
		class RecordingClusterer(ExampleClusterer):
			def __init__(self, *args, **kwargs):
				super().__init__(*args, **kwargs)
				self.sizes = []

			def find_modes(self, points, colours=None):
				self.sizes.append(points.shape[0])
				return super().find_modes(points, colours)

		forest = _stump_forest()
		g = torch.Generator().manual_seed(4)
		descriptors = torch.cat([torch.full((500, 2), 0.2), torch.full((30, 2), 0.8)])
		points = torch.cat([torch.randn(500, 3, generator=g) * 0.005, torch.randn(30, 3, generator=g) * 0.005 + 1.0])
		clusterer = RecordingClusterer(sigma=0.05, tau=0.05, min_cluster_size=5, max_cluster_count=4)
		table = forest.learn_leaf_predictions(descriptors, points, clusterer, max_points_per_leaf=50, rng=RandomNumberGenerator(0))

		assert sorted(clusterer.sizes) == [30, 50]
		assert table.get_prediction(0)[0].nb_inliers == 50
		assert table.get_prediction(1)[0].nb_inliers == 30

	def test_subsampling_is_reproducible(self):
		forest = _stump_forest()
		g = torch.Generator().manual_seed(5)
		descriptors = torch.full((300, 2), 0.2)
		points = torch.rand(300, 3, generator=g)
		clusterer = ExampleClusterer(sigma=0.5, tau=2.0, min_cluster_size=1, max_cluster_count=1)
		first = forest.learn_leaf_predictions(descriptors, points, clusterer, max_points_per_leaf=40, rng=RandomNumberGenerator(9))
		first_position = first.get_prediction(0)[0].position
		second = forest.learn_leaf_predictions(descriptors, points, clusterer, max_points_per_leaf=40, rng=RandomNumberGenerator(9))
		assert torch.equal(second.get_prediction(0)[0].position, first_position)
		assert second.get_prediction(0)[0].nb_inliers == 40

	def test_invalid_point_cap(self):
		with pytest.raises(ValueError):
			_stump_forest().learn_leaf_predictions(torch.zeros(1, 2), torch.zeros(1, 3), ExampleClusterer(), max_points_per_leaf=0)

	def test_empty_forest(self):
		forest = ScoreForest.from_decision_trees([])
		assert forest.tree_count() == 0
		assert forest.leaf_count() == 0
		assert forest.find_leaves(torch.zeros(2, 3, 4)).shape == (2, 3, 0)
		table = forest.learn_leaf_predictions(torch.zeros(5, 4), torch.zeros(5, 3), ExampleClusterer())
		assert table.leaf_count() == 0
