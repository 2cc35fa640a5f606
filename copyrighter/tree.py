"""
Reference trees for phylogenetic trait estimation.

A Newick tree is read once with Bio.Phylo into a read-only TreeTemplate,
an undirected adjacency view of the tree. Each estimation works on its own
CherryArena: a copy of the template pruned to the leaves of interest and
rooted at the target leaf, stored as flat parent/children/length/value
lists indexed by node number. Collapsing a cherry rewrites the parent slot
and marks both children dead, nothing else is rewired.
"""
from __future__ import annotations

import logging
from io import StringIO
from typing import Dict, Iterable, List, Mapping, Optional

from Bio import Phylo
from Bio.Phylo.NewickIO import NewickError

from .errors import TreeParseError, TreeTopologyError

logger = logging.getLogger(__name__)

MIN_BRANCH_LENGTH = 1e-5


class TreeTemplate:
    """Undirected, read-only view of a reference tree."""

    def __init__(self, names: List[Optional[str]], adjacency: List[Dict[int, Optional[float]]],
                 leaves: Dict[str, int]):
        self.names = names
        self.adjacency = adjacency
        self.leaves = leaves

    @classmethod
    def from_newick(cls, text: str) -> "TreeTemplate":
        try:
            tree = Phylo.read(StringIO(text), "newick")
        except (NewickError, ValueError) as e:
            raise TreeParseError(f"Malformed Newick tree: {e}") from e

        names: List[Optional[str]] = []
        adjacency: List[Dict[int, Optional[float]]] = []
        leaves: Dict[str, int] = {}
        index = {}
        for clade in tree.find_clades(order="preorder"):
            idx = len(names)
            index[id(clade)] = idx
            names.append(clade.name)
            adjacency.append({})
            if clade.is_terminal() and clade is not tree.root:
                if clade.name is None:
                    raise TreeParseError("Tree has an unnamed leaf")
                if clade.name in leaves:
                    logger.warning(f"Duplicate leaf name {clade.name} in tree, using first occurrence")
                else:
                    leaves[clade.name] = idx
        for clade in tree.find_clades(order="preorder"):
            parent = index[id(clade)]
            for child in clade.clades:
                c = index[id(child)]
                adjacency[parent][c] = child.branch_length
                adjacency[c][parent] = child.branch_length
        if not leaves:
            raise TreeParseError("Tree has no leaves")
        return cls(names, adjacency, leaves)

    @classmethod
    def from_file(cls, path: str) -> "TreeTemplate":
        with open(path, "r") as fh:
            return cls.from_newick(fh.read())

    def __len__(self) -> int:
        return len(self.names)

    def working_copy(self, target: str, keep: Iterable[str]) -> "CherryArena":
        """Prune to `keep` plus `target` and reroot at `target`."""
        if target not in self.leaves:
            raise KeyError(f"Leaf {target} not found in tree")
        keep_ids = {self.leaves[name] for name in keep if name in self.leaves}
        keep_ids.add(self.leaves[target])

        adj = [dict(a) for a in self.adjacency]
        alive = [True] * len(adj)
        stack = [n for n in range(len(adj)) if len(adj[n]) <= 1 and n not in keep_ids]
        while stack:
            n = stack.pop()
            if not alive[n]:
                continue
            alive[n] = False
            for m in list(adj[n]):
                del adj[m][n]
                if alive[m] and len(adj[m]) <= 1 and m not in keep_ids:
                    stack.append(m)
            adj[n].clear()

        return CherryArena.rooted(self.names, adj, self.leaves[target])


def _add_lengths(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None and b is None:
        return None
    return (a or 0.0) + (b or 0.0)


class CherryArena:
    """Rooted working tree whose cherries can be collapsed."""

    def __init__(self, root: int, names: List[Optional[str]], parent: List[int],
                 children: List[List[int]], length: List[Optional[float]]):
        self.root = root
        self.names = names
        self.parent = parent
        self.children = children
        self.length = length
        self.value: List[Optional[float]] = [None] * len(names)
        self.alive = [True] * len(names)

    @classmethod
    def rooted(cls, names: List[Optional[str]], adj: List[Dict[int, Optional[float]]],
               root: int) -> "CherryArena":
        """Build a rooted arena from a pruned adjacency, splicing out unary nodes."""
        new_names: List[Optional[str]] = [names[root]]
        parent = [-1]
        children: List[List[int]] = [[]]
        length: List[Optional[float]] = [None]
        # (node in adjacency, node it was reached from, parent in arena, accumulated length)
        stack = [(nbr, root, 0, bl) for nbr, bl in sorted(adj[root].items(), reverse=True)]
        while stack:
            node, came_from, arena_parent, bl = stack.pop()
            onward = [(m, l) for m, l in sorted(adj[node].items()) if m != came_from]
            if len(onward) == 1:
                nxt, nbl = onward[0]
                stack.append((nxt, node, arena_parent, _add_lengths(bl, nbl)))
                continue
            idx = len(new_names)
            new_names.append(names[node])
            parent.append(arena_parent)
            children.append([])
            length.append(bl)
            children[arena_parent].append(idx)
            for m, l in reversed(onward):
                stack.append((m, node, idx, l))
        return cls(0, new_names, parent, children, length)

    def is_leaf(self, n: int) -> bool:
        return not self.children[n]

    def leaves(self) -> List[int]:
        return [n for n in range(len(self.names)) if self.alive[n] and self.is_leaf(n)]

    def attach_values(self, values: Mapping[str, float]) -> None:
        for n in range(len(self.names)):
            if n != self.root and self.is_leaf(n):
                name = self.names[n]
                if name not in values:
                    raise TreeTopologyError(f"Leaf {name} has no trait value")
                self.value[n] = float(values[name])

    def _postorder(self) -> List[int]:
        order = []
        stack = [self.root]
        while stack:
            n = stack.pop()
            order.append(n)
            stack.extend(self.children[n])
        return order[::-1]

    def collapse_cherry(self, n: int, min_length: float = MIN_BRANCH_LENGTH) -> None:
        """Replace a cherry by its parent, weighting children by inverse distance."""
        c1, c2 = self.children[n]
        d1 = self.length[c1] or 0.0
        d2 = self.length[c2] or 0.0
        w1 = 1.0 / max(d1, min_length)
        w2 = 1.0 / max(d2, min_length)
        self.value[n] = (self.value[c1] * w1 + self.value[c2] * w2) / (w1 + w2)
        if d1 > 0 and d2 > 0:
            self.length[n] = (self.length[n] or 0.0) + d1 * d2 / (d1 + d2)
        self.alive[c1] = self.alive[c2] = False
        self.children[n] = []

    def collapse(self, min_length: float = MIN_BRANCH_LENGTH) -> float:
        """Collapse all cherries and return the value left at the root."""
        for n in self._postorder():
            if n == self.root:
                continue
            kids = self.children[n]
            if len(kids) == 2 and all(self.is_leaf(k) for k in kids):
                self.collapse_cherry(n, min_length)
        kids = self.children[self.root]
        if len(kids) == 1 and self.is_leaf(kids[0]):
            self.value[self.root] = self.value[kids[0]]
            self.alive[kids[0]] = False
            self.children[self.root] = []
        remaining = self.leaves()
        if remaining != [self.root]:
            raise TreeTopologyError(
                f"{len(remaining)} leaves left after collapsing cherries around "
                f"{self.names[self.root]}, tree is not binary or not connected")
        return self.value[self.root]
