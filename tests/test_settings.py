import pytest

from src.utils.settings import ForestSettings, RelocaliserSettings


class TestForestSettings:
	def test_defaults(self):
		settings = ForestSettings()
		assert settings.tree_count == 5
		assert settings.generator_type == "feature_thresholding"
		assert settings.seed is None

	def test_from_dict_accepts_field_names_and_namespaced_keys(self):
		settings = ForestSettings.from_dict({
			"tree_count": 3,
			"RandomForest.maxReservoirSize": 250,
			"RandomForest.seenExamplesThreshold": 12,
			"ScoreForestRelocaliser.maxClusterCount": 7,
			"unrelated": True,
		})
		assert settings.tree_count == 3
		assert settings.max_reservoir_size == 250
		assert settings.seen_examples_threshold == 12

	def test_from_dict_converts_strings(self):
		settings = ForestSettings.from_dict({
			"RandomForest.treeCount": "3",
			"RandomForest.splittabilityThreshold": "0.25",
			"RandomForest.seed": "7",
		})
		assert settings.tree_count == 3 and isinstance(settings.tree_count, int)
		assert settings.splittability_threshold == pytest.approx(0.25)
		assert settings.seed == 7

	def test_from_dict_reports_bad_numbers(self):
		with pytest.raises(ValueError):
			ForestSettings.from_dict({"RandomForest.treeCount": "many"})

	@pytest.mark.parametrize("kwargs", [
		{"tree_count": 0},
		{"max_reservoir_size": -1},
		{"seen_examples_threshold": -5},
		{"split_budget": -1},
		{"generator_type": "random_ferns"},
	])
	def test_invalid_values(self, kwargs):
		with pytest.raises(ValueError):
			ForestSettings(**kwargs)


class TestRelocaliserSettings:
	def test_defaults(self):
		settings = RelocaliserSettings()
		assert settings.max_cluster_count == 50
		assert settings.merge_policy == "rank"
		assert settings.merge_radius == pytest.approx(0.05)

	def test_from_dict_namespace(self):
		settings = RelocaliserSettings.from_dict({
			"ScoreForestRelocaliser.maxClusterCount": 12,
			"ScoreForestRelocaliser.mergePolicy": "proximity",
			"Other.maxClusterCount": 1,
		})
		assert settings.max_cluster_count == 12
		assert settings.merge_policy == "proximity"

	def test_custom_namespace(self):
		settings = RelocaliserSettings.from_dict({"Reloc.mergeRadius": 0.2}, namespace="Reloc")
		assert settings.merge_radius == pytest.approx(0.2)

	@pytest.mark.parametrize("kwargs", [
		{"max_cluster_count": 0},
		{"max_cluster_count": 51},
		{"merge_policy": "average"},
		{"merge_radius": -0.1},
		{"max_modes_per_leaf": 0},
		{"max_points_per_leaf": 0},
	])
	def test_invalid_values(self, kwargs):
		with pytest.raises(ValueError):
			RelocaliserSettings(**kwargs)

	def test_from_dict_converts_strings(self):
		settings = RelocaliserSettings.from_dict({
			"ScoreForestRelocaliser.maxClusterCount": "5",
			"ScoreForestRelocaliser.mergeRadius": "0.1",
			"ScoreForestRelocaliser.maxPointsPerLeaf": "300",
			"ScoreForestRelocaliser.device": "none",
		})
		assert settings.max_cluster_count == 5
		assert settings.merge_radius == pytest.approx(0.1)
		assert settings.max_points_per_leaf == 300
		assert settings.device is None

	def test_point_cap_can_be_disabled(self):
		assert RelocaliserSettings.from_dict({"max_points_per_leaf": None}).max_points_per_leaf is None
		assert RelocaliserSettings(device="cpu").device == "cpu"
