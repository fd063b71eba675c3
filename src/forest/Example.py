"""
Training examples for the online decision trees.

A descriptor is a fixed-length 1D float tensor. Examples are frozen so the same
object can be shared between a parent reservoir and its children during a
split without copying the descriptor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Hashable, Iterable, List, Sequence, TypeVar

import numpy as np
import torch

Label = TypeVar("Label", bound=Hashable)
Descriptor = torch.Tensor


def make_descriptor(values) -> Descriptor:
	"""Turn a list, numpy array or tensor into a detached 1D float descriptor."""
	if torch.is_tensor(values):
		descriptor = values.detach().to(dtype=torch.float32)
	else:
		descriptor = torch.as_tensor(np.asarray(values, dtype=np.float32))
	if descriptor.ndim != 1:
		raise ValueError(f"Descriptors must be 1D, got shape {tuple(descriptor.shape)}")
	return descriptor


@dataclass(frozen=True, eq=False)
class Example(Generic[Label]):
	descriptor: Descriptor
	label: Label

	def get_descriptor(self) -> Descriptor:
		return self.descriptor

	def get_label(self) -> Label:
		return self.label


def make_examples(descriptors: Iterable[Sequence[float]], labels: Iterable[Label]) -> List[Example[Label]]:
	"""Zip descriptors (rows of an array, tensor or list) with labels."""
	if torch.is_tensor(descriptors) or isinstance(descriptors, np.ndarray):
		descriptors = list(descriptors)
	labels = list(labels)
	if len(descriptors) != len(labels):
		raise ValueError("Descriptors and labels must have the same length")
	return [Example(make_descriptor(d), label) for d, label in zip(descriptors, labels)]


__all__ = ["Descriptor", "Example", "make_descriptor", "make_examples"]
