"""
An updatable max-priority queue over integer ids, used by the decision trees
to rank nodes by splittability.

Built on heapq with lazy invalidation: updating or erasing an id marks its heap
entry as stale and pushes a fresh one, and stale entries are skipped when they
reach the top. The heap is rebuilt from the live entries whenever stale ones
outnumber them, so its size stays proportional to the number of ids.
Ties are broken by the order in which ids were inserted.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List


_REMOVED = object()

# Heap entry layout: [-key, insertion order, push sequence, id, data]
_ID = 3
_DATA = 4


@dataclass(frozen=True)
class Element:
	id: int
	key: float
	data: Any = None


class PriorityQueue:
	def __init__(self):
		self._heap: List[list] = []
		self._entries: Dict[int, list] = {}
		self._insertion_order: Dict[int, int] = {}
		self._insertions = itertools.count()
		self._pushes = itertools.count()

	def insert(self, id: int, key: float, data: Any = None) -> None:
		if id in self._entries:
			raise ValueError(f"Id {id} is already in the queue")
		self._insertion_order[id] = next(self._insertions)
		self._push(id, key, data)

	def update_key(self, id: int, key: float) -> None:
		entry = self._entries[id]
		entry[_ID] = _REMOVED
		self._push(id, key, entry[_DATA])

	def erase(self, id: int) -> None:
		entry = self._entries.pop(id)
		entry[_ID] = _REMOVED
		del self._insertion_order[id]
		self._compact()

	def top(self) -> Element:
		self._discard_stale()
		if not self._heap:
			raise IndexError("top() called on an empty priority queue")
		entry = self._heap[0]
		return Element(entry[_ID], -entry[0], entry[_DATA])

	def pop(self) -> Element:
		e = self.top()
		heapq.heappop(self._heap)
		del self._entries[e.id]
		del self._insertion_order[e.id]
		return e

	def contains(self, id: int) -> bool:
		return id in self._entries

	def element(self, id: int) -> Element:
		entry = self._entries[id]
		return Element(id, -entry[0], entry[_DATA])

	def empty(self) -> bool:
		return not self._entries

	def __len__(self) -> int:
		return len(self._entries)

	def __contains__(self, id: int) -> bool:
		return self.contains(id)

	def _push(self, id: int, key: float, data: Any) -> None:
		entry = [-float(key), self._insertion_order[id], next(self._pushes), id, data]
		self._entries[id] = entry
		heapq.heappush(self._heap, entry)
		self._compact()

	def _discard_stale(self) -> None:
		while self._heap and self._heap[0][_ID] is _REMOVED:
			heapq.heappop(self._heap)

	def _compact(self) -> None:
		# Rebuild from the live entries once stale ones outnumber them.
		if len(self._heap) > 2 * len(self._entries):
			self._heap = list(self._entries.values())
			heapq.heapify(self._heap)


__all__ = ["PriorityQueue", "Element"]
