"""
Summarize genome traits by clade.

Genomes are grouped by their full lineage (e.g. the 7-rank Greengenes
string). The deepest rank averages the genomes of each lineage; every
shallower rank averages the averages of its child clades, so a clade with
one genome weighs as much as a sibling with a hundred. Lineages with a
missing rank ("g__", empty token) are left out entirely.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, TextIO, Tuple

from .lookup import format_value, natural_order

logger = logging.getLogger(__name__)

GG_DEPTH = 7
IMG_DEPTH = 6


@dataclass
class Clade:
    """Running trait sums of one clade; `count` is genomes at the deepest rank, children above."""
    count: int = 0
    weight: float = 0.0
    sums: Dict[str, float] = field(default_factory=dict)

    def add(self, values: Mapping[str, float], weight: float = 1.0) -> None:
        self.count += 1
        self.weight += weight
        for trait, value in values.items():
            self.sums[trait] = self.sums.get(trait, 0.0) + weight * value

    def average(self, trait: str) -> float:
        return self.sums[trait] / self.weight

    def averages(self) -> Dict[str, float]:
        return {trait: self.average(trait) for trait in self.sums}


def split_lineage(lineage: str, depth: int = GG_DEPTH) -> Optional[List[str]]:
    """Rank tokens of a lineage, None if it is not complete at `depth` ranks."""
    tokens = [t.strip() for t in lineage.split(";")]
    if len(tokens) != depth:
        return None
    if any(not t or t.endswith("__") for t in tokens):
        return None
    return tokens


def aggregate_clades(genomes: Iterable[tuple], depth: int = GG_DEPTH) -> List[Dict[str, Clade]]:
    """Average traits per clade at every rank.

    `genomes` yields (lineage, {trait: value}) pairs, or (lineage, values,
    weight) triples to weight genomes within their lineage. Genomes with an
    incomplete lineage or a missing trait value are skipped. Returns one
    {lineage prefix: Clade} map per rank, shallowest first.
    """
    levels: List[Dict[str, Clade]] = [{} for _ in range(depth)]
    n_incomplete = n_missing = 0
    for lineage, values, *rest in genomes:
        tokens = split_lineage(lineage, depth)
        if tokens is None:
            n_incomplete += 1
            continue
        if any(v is None for v in values.values()):
            n_missing += 1
            continue
        key = ";".join(tokens)
        weight = rest[0] if rest else 1.0
        levels[-1].setdefault(key, Clade()).add(values, weight)
    if n_incomplete or n_missing:
        logger.info(f"Skipped {n_incomplete} genomes with an incomplete lineage "
                    f"and {n_missing} with missing trait values")

    for rank in range(depth - 2, -1, -1):
        for child_key, child in levels[rank + 1].items():
            parent_key = child_key.rsplit(";", 1)[0]
            levels[rank].setdefault(parent_key, Clade()).add(child.averages())
    logger.info(f"Aggregated {sum(c.count for c in levels[-1].values())} genomes into "
                f"{len(levels[-1])} lineages")
    return levels


def genome_summary(genomes: Iterable[Tuple[str, Mapping[str, Optional[float]]]]) -> Dict[str, Clade]:
    """One single-genome entry per genome ID."""
    summary: Dict[str, Clade] = {}
    for genome_id, values in genomes:
        if any(v is None for v in values.values()):
            continue
        if genome_id in summary:
            logger.warning(f"Duplicate genome ID {genome_id}, keeping last occurrence")
        clade = Clade()
        clade.add(values)
        summary[genome_id] = clade
    return summary


def write_clade_summary(levels: Sequence[Mapping[str, Clade]], traits: Sequence[str], fh: TextIO) -> int:
    """Write one block per rank: name, count and average of each trait.

    Blocks are separated by a blank line.
    """
    fh.write("#Clade\tCount\t" + "\t".join(traits) + "\n")
    n = 0
    for level in levels:
        for key in natural_order(level):
            clade = level[key]
            cells = [format_value(clade.average(t)) for t in traits]
            fh.write(f"{key}\t{clade.count}\t" + "\t".join(cells) + "\n")
            n += 1
        fh.write("\n")
    return n


def write_clade_trait_table(levels: Sequence[Mapping[str, Clade]], trait: str, fh: TextIO) -> int:
    """Write every clade of every rank as a trait table keyed by lineage.

    The lineage is both the ID and the description, so the table can be
    used for correction with either lookup.
    """
    fh.write("#ID\tTrait\tDesc\n")
    n = 0
    for level in levels:
        for key in natural_order(level):
            fh.write(f"{key}\t{format_value(level[key].average(trait))}\t{key}\n")
            n += 1
    return n
