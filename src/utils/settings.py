"""
Settings for forest training and relocalisation.

Settings can be built directly, from argparse namespaces, or from flat
mappings whose keys are either the field names or namespaced camelCase keys
such as "ScoreForestRelocaliser.maxClusterCount".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Union, get_args, get_origin, get_type_hints

from src.forest.DecisionFunctionGenerator import GENERATORS
from src.relocalisation.ClusterMode import MAX_CLUSTERS

MERGE_POLICIES = ("rank", "proximity")


def _camel_to_snake(name: str) -> str:
	return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _coerce(value: Any, hint: Any) -> Any:
	"""Convert a raw mapping value (often a string from a config file) to the field's type."""
	if get_origin(hint) is Union:
		if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "null")):
			return None
		hint = next(arg for arg in get_args(hint) if arg is not type(None))
	if hint in (int, float, str) and not isinstance(value, hint):
		return hint(value)
	return value


def _collect(cls, mapping: Mapping[str, Any], namespace: str) -> dict:
	names = {f.name for f in fields(cls)}
	hints = get_type_hints(cls)
	values = {}
	for key, value in mapping.items():
		if "." in key:
			prefix, _, key = key.rpartition(".")
			if prefix != namespace:
				continue
		key = _camel_to_snake(key)
		if key in names:
			values[key] = _coerce(value, hints[key])
	return values


@dataclass
class ForestSettings:
	tree_count: int = 5
	max_reservoir_size: int = 1000
	seen_examples_threshold: int = 30
	split_budget: int = 1
	splittability_threshold: float = 0.5
	generator_type: str = "feature_thresholding"
	seed: Optional[int] = None

	NAMESPACE = "RandomForest"

	def __post_init__(self):
		if self.tree_count <= 0:
			raise ValueError(f"tree_count must be positive, got {self.tree_count}")
		if self.max_reservoir_size < 0:
			raise ValueError(f"max_reservoir_size must be non-negative, got {self.max_reservoir_size}")
		if self.seen_examples_threshold < 0:
			raise ValueError(f"seen_examples_threshold must be non-negative, got {self.seen_examples_threshold}")
		if self.split_budget < 0:
			raise ValueError(f"split_budget must be non-negative, got {self.split_budget}")
		if self.generator_type not in GENERATORS:
			raise ValueError(f"Unknown generator_type '{self.generator_type}' (expected one of {sorted(GENERATORS)})")

	@classmethod
	def from_dict(cls, mapping: Mapping[str, Any], namespace: Optional[str] = None) -> "ForestSettings":
		return cls(**_collect(cls, mapping, namespace or cls.NAMESPACE))


@dataclass
class RelocaliserSettings:
	max_cluster_count: int = MAX_CLUSTERS
	merge_policy: str = "rank"
	merge_radius: float = 0.05
	max_modes_per_leaf: int = 10
	clusterer_sigma: float = 0.1
	clusterer_tau: float = 0.05
	min_cluster_size: int = 20
	max_points_per_leaf: Optional[int] = 2000
	device: Optional[str] = None

	NAMESPACE = "ScoreForestRelocaliser"

	def __post_init__(self):
		if not 0 < self.max_cluster_count <= MAX_CLUSTERS:
			raise ValueError(f"max_cluster_count must be in [1, {MAX_CLUSTERS}], got {self.max_cluster_count}")
		if self.merge_policy not in MERGE_POLICIES:
			raise ValueError(f"Unknown merge_policy '{self.merge_policy}' (expected one of {MERGE_POLICIES})")
		if self.merge_radius < 0:
			raise ValueError(f"merge_radius must be non-negative, got {self.merge_radius}")
		if not 0 < self.max_modes_per_leaf <= MAX_CLUSTERS:
			raise ValueError(f"max_modes_per_leaf must be in [1, {MAX_CLUSTERS}], got {self.max_modes_per_leaf}")
		if self.max_points_per_leaf is not None and self.max_points_per_leaf <= 0:
			raise ValueError(f"max_points_per_leaf must be positive, got {self.max_points_per_leaf}")

	@classmethod
	def from_dict(cls, mapping: Mapping[str, Any], namespace: Optional[str] = None) -> "RelocaliserSettings":
		return cls(**_collect(cls, mapping, namespace or cls.NAMESPACE))


__all__ = ["ForestSettings", "RelocaliserSettings", "MERGE_POLICIES"]
