import pytest
import torch

import src.relocalisation.ScoreForestRelocaliser as relocaliser_module
from src.relocalisation.ClusterMode import ClusterMode, LeafPredictions
from src.relocalisation.ExampleClusterer import ExampleClusterer
from src.relocalisation.ScoreForest import ScoreForest
from src.relocalisation.ScoreForestRelocaliser import ScoreForestRelocaliser
from src.utils.settings import RelocaliserSettings


def _five_trees_three_modes():
	"""Leaf t holds three well separated modes; inlier counts are all distinct."""
	weights = [[7, 3, 1], [15, 2, 9], [4, 12, 6], [8, 14, 5], [11, 13, 10]]
	predictions = []
	for t, row in enumerate(weights):
		modes = [ClusterMode.at((float(t), float(k), 0.0), w) for k, w in enumerate(sorted(row, reverse=True))]
		predictions.append(modes)
	return LeafPredictions.from_predictions(predictions, max_modes=3), sorted(sum(weights, []), reverse=True)


def _relocaliser(**kwargs):
	return ScoreForestRelocaliser(RelocaliserSettings(**kwargs))


class TestPerPixelMerge:
	@pytest.mark.parametrize("policy", ["rank", "proximity"])
	def test_five_trees_keep_the_five_heaviest(self, policy):
		table, ranked = _five_trees_three_modes()
		leaf_indices = torch.arange(5).reshape(1, 1, 5)
		reloc = _relocaliser(max_cluster_count=5, merge_policy=policy)

		modes = reloc.merge_predictions_for_keypoint(0, 0, leaf_indices, table)
		assert [m.nb_inliers for m in modes] == ranked[:5]

		image = reloc.merge_predictions_for_keypoints(leaf_indices, table)
		prediction = reloc.get_predictions_for_pixel(0, 0)
		assert image.sizes[0, 0] == 5
		assert [m.nb_inliers for m in prediction] == ranked[:5]

	def test_no_loss_when_everything_fits(self):
		table, ranked = _five_trees_three_modes()
		leaf_indices = torch.arange(5).reshape(1, 1, 5)
		reloc = _relocaliser(max_cluster_count=20)
		reloc.merge_predictions_for_keypoints(leaf_indices, table)
		prediction = reloc.get_predictions_for_pixel(0, 0)
		assert [m.nb_inliers for m in prediction] == ranked

	def test_missing_leaves_contribute_nothing(self):
		table, _ = _five_trees_three_modes()
		leaf_indices = torch.tensor([[[-1, 1, -1, -1, -1]]])
		reloc = _relocaliser(max_cluster_count=5)
		reloc.merge_predictions_for_keypoints(leaf_indices, table)
		assert [m.nb_inliers for m in reloc.get_predictions_for_pixel(0, 0)] == [15, 9, 2]

	def test_empty_evidence(self):
		table = LeafPredictions.from_predictions([[], [ClusterMode.at((0.0, 0.0, 0.0), 0)]], max_modes=2)
		reloc = _relocaliser(max_cluster_count=3)
		image = reloc.merge_predictions_for_keypoints(torch.tensor([[[0, 1], [-1, -1]]]), table)
		assert image.sizes.tolist() == [[0, 0]]
		assert len(reloc.get_predictions_for_pixel(1, 0)) == 0
		assert reloc.merge_predictions_for_keypoint(0, 0, torch.tensor([[[0, 1]]]), table) == []

	def test_ties_keep_tree_order(self):
		table = LeafPredictions.from_predictions(
			[[ClusterMode.at((0.0, 0.0, 0.0), 5)], [ClusterMode.at((1.0, 0.0, 0.0), 5)], [ClusterMode.at((2.0, 0.0, 0.0), 5)]],
			max_modes=1,
		)
		reloc = _relocaliser(max_cluster_count=2)
		reloc.merge_predictions_for_keypoints(torch.tensor([[[2, 0, 1]]]), table)
		assert [m.position[0].item() for m in reloc.get_predictions_for_pixel(0, 0)] == [2.0, 0.0]

	def test_proximity_folds_nearby_modes(self):
		table = LeafPredictions.from_predictions(
			[
				[ClusterMode.at((0.0, 0.0, 0.0), 10, colour=(100, 0, 0)), ClusterMode.at((1.0, 0.0, 0.0), 8)],
				[ClusterMode.at((0.01, 0.0, 0.0), 5, colour=(10, 0, 0)), ClusterMode.at((2.0, 0.0, 0.0), 1)],
			],
			max_modes=2,
		)
		leaf_indices = torch.tensor([[[0, 1]]])

		rank = _relocaliser(max_cluster_count=2, merge_policy="rank")
		rank.merge_predictions_for_keypoints(leaf_indices, table)
		assert [m.nb_inliers for m in rank.get_predictions_for_pixel(0, 0)] == [10, 8]

		proximity = _relocaliser(max_cluster_count=2, merge_policy="proximity", merge_radius=0.05)
		proximity.merge_predictions_for_keypoints(leaf_indices, table)
		folded, second = proximity.get_predictions_for_pixel(0, 0)
		assert folded.nb_inliers == 15
		assert folded.position[0].item() == pytest.approx(0.05 / 15, abs=1e-6)
		assert folded.colour.tolist() == [70, 0, 0]
		assert second.nb_inliers == 8

	def test_output_never_exceeds_max(self):
		g = torch.Generator().manual_seed(3)
		predictions = []
		for _ in range(12):
			count = int(torch.randint(0, 5, (1,), generator=g))
			predictions.append([
				ClusterMode.at(torch.rand(3, generator=g).tolist(), int(torch.randint(1, 50, (1,), generator=g)))
				for _ in range(count)
			])
		table = LeafPredictions.from_predictions(predictions, max_modes=4)
		leaf_indices = torch.randint(-1, 12, (3, 4, 6), generator=g)
		for policy in ("rank", "proximity"):
			reloc = _relocaliser(max_cluster_count=7, merge_policy=policy, merge_radius=0.2)
			image = reloc.merge_predictions_for_keypoints(leaf_indices, table)
			assert int(image.sizes.max()) <= 7
			for y in range(3):
				for x in range(4):
					candidates = sum(len(table.get_prediction(l)) for l in leaf_indices[y, x].tolist() if l >= 0)
					if candidates <= 7:
						assert int(image.sizes[y, x]) == candidates


class TestBatchMerge:
	def test_blocks_match_per_pixel_merge(self, monkeypatch):
		monkeypatch.setattr(relocaliser_module, "PIXEL_BLOCK_SIZE", 4)
		g = torch.Generator().manual_seed(0)
		predictions = [
			[ClusterMode.at(torch.rand(3, generator=g).tolist(), int(torch.randint(1, 30, (1,), generator=g))) for _ in range(3)]
			for _ in range(8)
		]
		table = LeafPredictions.from_predictions(predictions, max_modes=3)
		leaf_indices = torch.randint(-1, 8, (3, 5, 4), generator=g)
		reloc = _relocaliser(max_cluster_count=6)
		reloc.merge_predictions_for_keypoints(leaf_indices, table)
		for y in range(3):
			for x in range(5):
				expected = reloc.merge_predictions_for_keypoint(x, y, leaf_indices, table)
				actual = reloc.get_predictions_for_pixel(x, y)
				assert [m.nb_inliers for m in actual] == [m.nb_inliers for m in expected]
				for a, e in zip(actual, expected):
					assert torch.equal(a.position, e.position)
				assert reloc.predictions_image.inliers[y, x, len(expected):].sum() == 0

	def test_output_image_is_resized_only_on_change(self):
		table, _ = _five_trees_three_modes()
		reloc = _relocaliser(max_cluster_count=5)
		first = reloc.merge_predictions_for_keypoints(torch.zeros(2, 3, 5, dtype=torch.int64), table)
		positions = first.positions
		second = reloc.merge_predictions_for_keypoints(torch.ones(2, 3, 5, dtype=torch.int64), table)
		assert second is first
		assert second.positions is positions
		assert (second.height, second.width) == (2, 3)
		third = reloc.merge_predictions_for_keypoints(torch.zeros(4, 1, 5, dtype=torch.int64), table)
		assert (third.height, third.width) == (4, 1)
		assert third.positions is not positions

	def test_no_trees_gives_an_empty_image(self):
		table, _ = _five_trees_three_modes()
		reloc = _relocaliser(max_cluster_count=5)
		reloc.merge_predictions_for_keypoints(torch.arange(5).reshape(1, 1, 5).expand(2, 2, 5), table)
		assert int(reloc.predictions_image.sizes.sum()) == 20

		image = reloc.merge_predictions_for_keypoints(torch.zeros(2, 2, 0, dtype=torch.int64), table)
		assert image.sizes.tolist() == [[0, 0], [0, 0]]
		assert int(image.inliers.sum()) == 0
		assert len(reloc.get_predictions_for_pixel(1, 1)) == 0

	def test_predict_with_an_empty_forest(self):
		forest = ScoreForest.from_decision_trees([])
		forest.learn_leaf_predictions(torch.zeros(3, 2), torch.zeros(3, 3), ExampleClusterer())
		reloc = ScoreForestRelocaliser(RelocaliserSettings(max_cluster_count=3), forest=forest)
		assert reloc.predict(torch.zeros(2, 3, 2)).sizes.tolist() == [[0, 0, 0], [0, 0, 0]]

	def test_leaf_indices_must_be_an_image(self):
		table, _ = _five_trees_three_modes()
		with pytest.raises(ValueError):
			_relocaliser().merge_predictions_for_keypoints(torch.zeros(5, dtype=torch.int64), table)


class TestPredict:
	def test_needs_leaf_predictions(self):
		with pytest.raises(ValueError):
			_relocaliser().predict(torch.zeros(1, 1, 2))

	def test_predict_from_descriptors(self):
		forest = ScoreForest(
			left_child_idx=torch.tensor([[1, -1, -1]]),
			feature_idx=torch.tensor([[0, 0, 0]]),
			feature_threshold=torch.tensor([[0.5, 0.0, 0.0]]),
			leaf_idx=torch.tensor([[-1, 0, 1]]),
		)
		g = torch.Generator().manual_seed(1)
		descriptors = torch.cat([torch.full((30, 1), 0.1), torch.full((30, 1), 0.9)])
		points = torch.cat([torch.randn(30, 3, generator=g) * 0.005, torch.randn(30, 3, generator=g) * 0.005 + 2.0])
		forest.learn_leaf_predictions(descriptors, points, ExampleClusterer(sigma=0.05, tau=0.05, min_cluster_size=5, max_cluster_count=2))

		reloc = ScoreForestRelocaliser(RelocaliserSettings(max_cluster_count=4), forest=forest)
		image = reloc.predict(torch.tensor([[[0.2], [0.7]], [[float("nan")], [0.0]]]))
		assert image.sizes.tolist() == [[1, 1], [0, 1]]
		assert torch.allclose(reloc.get_predictions_for_pixel(1, 0)[0].position, torch.full((3,), 2.0), atol=0.01)
		assert torch.allclose(reloc.get_predictions_for_pixel(0, 0)[0].position, torch.zeros(3), atol=0.01)
