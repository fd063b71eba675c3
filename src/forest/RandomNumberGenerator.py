"""
Explicitly owned random number source shared by a tree, its reservoirs and its
split generator. Seeding it once makes a whole training run reproducible.
"""

import random
from typing import Optional, Sequence


class RandomNumberGenerator:
	def __init__(self, seed: Optional[int] = None):
		self.seed = seed
		self._random = random.Random(seed)

	def generate_int_in_range(self, low: int, high: int) -> int:
		"""Uniform integer in the closed range [low, high]."""
		if high < low:
			raise ValueError(f"Empty range [{low}, {high}]")
		return self._random.randint(low, high)

	def generate_real_in_range(self, low: float, high: float) -> float:
		return self._random.uniform(low, high)

	def generate_normal(self, mean: float = 0.0, sigma: float = 1.0) -> float:
		return self._random.gauss(mean, sigma)

	def choice(self, items: Sequence):
		return items[self.generate_int_in_range(0, len(items) - 1)]

	def spawn_seed(self) -> int:
		"""Draw a seed for a dependent generator (e.g. one per forest tree)."""
		return self._random.getrandbits(32)


__all__ = ["RandomNumberGenerator"]
