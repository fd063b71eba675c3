"""
Label histograms and the probability mass functions derived from them.

A Histogram counts how many examples with each label have reached a node. The
decision tree uses its entropy to rank nodes for splitting, and leaves turn
their histograms into ProbabilityMassFunctions when queried.
"""

from __future__ import annotations

import math
from typing import Dict, Generic, Hashable, Iterable, Optional, TypeVar

Label = TypeVar("Label", bound=Hashable)


def calculate_entropy(counts: Iterable[float]) -> float:
	"""Shannon entropy (in bits) of a set of non-negative counts or masses."""
	values = [float(c) for c in counts if c > 0]
	total = sum(values)
	if total <= 0.0:
		return 0.0
	entropy = 0.0
	for v in values:
		p = v / total
		entropy -= p * math.log2(p)
	return entropy


class Histogram(Generic[Label]):
	def __init__(self):
		self._bins: Dict[Label, int] = {}
		self._count = 0

	def add(self, label: Label, count: int = 1) -> None:
		self._bins[label] = self._bins.get(label, 0) + count
		self._count += count

	def remove(self, label: Label) -> None:
		if label not in self._bins:
			raise KeyError(f"Cannot remove label {label!r}: it is not in the histogram")
		self._bins[label] -= 1
		self._count -= 1
		if self._bins[label] == 0:
			del self._bins[label]

	def clear(self) -> None:
		self._bins.clear()
		self._count = 0

	def get_bins(self) -> Dict[Label, int]:
		return dict(self._bins)

	def get_bin(self, label: Label) -> int:
		return self._bins.get(label, 0)

	def get_count(self) -> int:
		return self._count

	def calculate_entropy(self) -> float:
		return calculate_entropy(self._bins.values())

	def __len__(self) -> int:
		return len(self._bins)

	def __contains__(self, label) -> bool:
		return label in self._bins

	def __str__(self) -> str:
		items = ", ".join(f"{label}: {count}" for label, count in sorted(self._bins.items(), key=lambda x: str(x[0])))
		return "{" + items + "}"


class ProbabilityMassFunction(Generic[Label]):
	"""
	Normalised label distribution. Built either from a histogram or directly
	from a mapping of (not necessarily normalised) masses.
	"""

	def __init__(self, histogram: Optional[Histogram[Label]] = None, masses: Optional[Dict[Label, float]] = None):
		if histogram is not None and masses is not None:
			raise ValueError("Pass either a histogram or a set of masses, not both")
		if histogram is not None:
			masses = {label: float(count) for label, count in histogram.get_bins().items()}
		masses = masses or {}
		total = sum(masses.values())
		if total > 0:
			self._masses = {label: m / total for label, m in masses.items() if m > 0}
		else:
			self._masses = {}

	def get_masses(self) -> Dict[Label, float]:
		return dict(self._masses)

	def get_mass(self, label: Label) -> float:
		return self._masses.get(label, 0.0)

	def calculate_best_label(self) -> Optional[Label]:
		if not self._masses:
			return None
		return max(self._masses.items(), key=lambda x: x[1])[0]

	def calculate_entropy(self) -> float:
		return calculate_entropy(self._masses.values())

	def empty(self) -> bool:
		return not self._masses

	def __str__(self) -> str:
		items = ", ".join(f"{label}: {mass:.4f}" for label, mass in sorted(self._masses.items(), key=lambda x: str(x[0])))
		return "{" + items + "}"


__all__ = ["Histogram", "ProbabilityMassFunction", "calculate_entropy"]
