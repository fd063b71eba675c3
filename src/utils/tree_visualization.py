"""
Render online decision trees with graphviz.

Internal nodes show their splitter, leaves show how many examples they have
seen and their label distribution. Large trees can be cut off at a depth.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from typing import Optional

from graphviz import Digraph

from src.forest.DecisionTree import DecisionTree
from src.forest.Histogram import ProbabilityMassFunction

logger = logging.getLogger(__name__)


def _wrap(text: str, wrap: int = 40) -> str:
	words = text.split()
	lines = []
	current_line = ""
	for word in words:
		if len(current_line) + len(word) + (1 if current_line else 0) > wrap:
			lines.append(current_line)
			current_line = word
		else:
			current_line += (" " if current_line else "") + word
	if current_line:
		lines.append(current_line)
	return "\n".join(lines)


def tree_to_digraph(tree: DecisionTree, max_depth: Optional[int] = None, name: str = "DecisionTree") -> Digraph:
	dot = Digraph(comment=name, format="png")
	dot.attr(rankdir="TB")
	dot.attr("edge", color="lightblue")

	q = deque([(tree.root_index, 0)])
	while q:
		node_index, depth = q.popleft()
		nid = f"n{node_index}"
		if tree.is_leaf(node_index):
			reservoir = tree.get_reservoir(node_index)
			pmf = ProbabilityMassFunction(reservoir.get_histogram())
			label = f"{node_index}: {reservoir.seen_examples()} seen\n{_wrap(str(pmf))}"
			dot.node(nid, label, shape="box", style="filled", color="lightgrey", fontsize="10", fontname="Helvetica")
			continue

		dot.node(nid, f"{node_index}: {tree.get_splitter(node_index)}", shape="oval", style="filled", color="#ccccff", fontsize="10", fontname="Helvetica")
		left, right = tree.get_children(node_index)
		if max_depth is not None and depth + 1 > max_depth:
			dot.node(f"{nid}_more", "...", shape="plaintext")
			dot.edge(nid, f"{nid}_more")
			continue
		dot.edge(nid, f"n{left}", label="L")
		dot.edge(nid, f"n{right}", label="R")
		q.append((left, depth + 1))
		q.append((right, depth + 1))
	return dot


def render_tree(tree: DecisionTree, directory: str, filename: str = "tree", max_depth: Optional[int] = None) -> str:
	"""Renders the tree to `directory/filename.png` and returns the path."""
	os.makedirs(directory, exist_ok=True)
	dot = tree_to_digraph(tree, max_depth=max_depth, name=filename)
	filepath = os.path.join(directory, filename)
	dot.render(filepath, cleanup=True)
	logger.info("Saved: %s.png", filepath)
	return filepath + ".png"


__all__ = ["tree_to_digraph", "render_tree"]
