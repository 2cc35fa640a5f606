"""
Phylogenetic trait estimation for taxa without an observed value.

For each target leaf the reference tree is pruned to the leaves with a
known trait plus the target, rerooted at the target, and its cherries are
collapsed by inverse-branch-length weighted averaging until only the
target is left (see tree.CherryArena). Targets are independent and are
spread over a WorkerPool.
"""
from __future__ import annotations

import logging
import sys
from collections import defaultdict
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, TextIO, Tuple

import numpy as np
from tqdm import tqdm

from .config import EstimationConfig
from .errors import NoKnownValues
from .lookup import TableReader, format_value, natural_order, parse_value
from .reconcile import near_average
from .tree import MIN_BRANCH_LENGTH, TreeTemplate
from .workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class OutlierEvent:
    taxon: str
    action: str
    value: float
    mean: float

    def __str__(self) -> str:
        return f"{self.action}\t{self.taxon}\t{self.value:g}\t{self.mean:g}"


def read_observations(path: str, id_col: str = "id", trait_col: str = "trait") -> Dict[str, List[float]]:
    """Read trait observations, keeping every value of a repeated ID."""
    observations: Dict[str, List[float]] = defaultdict(list)
    reader = TableReader(path, [id_col, trait_col])
    for rec in reader:
        value = parse_value(rec[trait_col])
        # 0 means missing
        if value:
            observations[rec[id_col]].append(value)
    logger.info(f"Read {sum(len(v) for v in observations.values())} observations "
                f"for {len(observations)} taxa from {path}")
    return dict(observations)


def remove_outliers(observations: Mapping[str, Sequence[float]]
                    ) -> Tuple[Dict[str, List[float]], List[OutlierEvent]]:
    """Drop observations far from the mean of their own taxon.

    Values outside the very dodgy band (multiplier 2) around the taxon mean
    are dropped; values only outside the dodgy band (multiplier 1) are kept
    and flagged. Every event is logged and returned.
    """
    cleaned: Dict[str, List[float]] = {}
    events: List[OutlierEvent] = []
    for taxon, values in observations.items():
        values = [float(v) for v in values]
        if len(values) < 2:
            cleaned[taxon] = values
            continue
        mean = float(np.mean(values))
        kept = []
        for v in values:
            if not near_average(v, mean, 2):
                events.append(OutlierEvent(taxon, "dropped", v, mean))
                continue
            if not near_average(v, mean, 1):
                events.append(OutlierEvent(taxon, "flagged", v, mean))
            kept.append(v)
        if kept:
            cleaned[taxon] = kept
    for event in events:
        logger.info(str(event))
    n_dropped = sum(1 for e in events if e.action == "dropped")
    logger.info(f"Outlier removal dropped {n_dropped} and flagged {len(events) - n_dropped} observations")
    return cleaned, events


def average_known(observations: Mapping[str, Sequence[float]]) -> Dict[str, float]:
    """Mean of the non-zero observations of each taxon."""
    known = {}
    for taxon, values in observations.items():
        vals = [v for v in values if v]
        if vals:
            known[taxon] = float(np.mean(vals))
    return known


def estimate_leaf(template: TreeTemplate, known: Mapping[str, float], target: str,
                  min_length: float = MIN_BRANCH_LENGTH) -> float:
    """Estimate the trait of one leaf from the known values of the others.

    A known value of the target itself is not used.
    """
    keep = [name for name in known if name != target and name in template.leaves]
    if not keep:
        raise NoKnownValues(f"No known trait values in the tree to estimate {target}")
    arena = template.working_copy(target, keep)
    arena.attach_values(known)
    return arena.collapse(min_length)


def estimate_traits(template: TreeTemplate, known: Mapping[str, float],
                    targets: Optional[Iterable[str]] = None,
                    config: Optional[EstimationConfig] = None) -> Dict[str, float]:
    """Estimate the trait of every target leaf.

    By default the targets are all tree leaves without a known value.
    """
    config = config or EstimationConfig()
    config.validate()
    if not any(name in template.leaves for name in known):
        raise NoKnownValues("None of the known trait values belong to a leaf of the tree")
    if targets is None:
        targets = [name for name in template.leaves if name not in known]
    targets = list(targets)
    logger.info(f"Estimating trait for {len(targets)} leaves from {len(known)} known values "
                f"using {config.workers} workers")

    estimates: Dict[str, float] = {}
    progress = tqdm(total=len(targets), desc="Estimating traits",
                    disable=not (config.progress and sys.stderr.isatty()))

    def collect(target: str, value: float) -> None:
        estimates[target] = value

    # the tree and known values travel to each worker process once
    handle = partial(estimate_leaf, template, dict(known), min_length=config.min_branch_length)
    pool = WorkerPool(handle, collect, workers=config.workers, on_done=progress.update)
    try:
        pool.run(targets)
    finally:
        progress.close()
    return {name: estimates[name] for name in natural_order(estimates)}


def inflate_clusters(values: Mapping[str, float], clusters: Mapping[str, Sequence[str]]
                     ) -> Tuple[Dict[str, float], Dict[str, str]]:
    """Give every cluster member the trait of its representative.

    Members that already have a value keep it. Returns the new table and a
    member -> representative map of the values that were added.
    """
    inflated = dict(values)
    added: Dict[str, str] = {}
    for rep, members in clusters.items():
        if rep not in values:
            continue
        for member in members:
            if member not in inflated:
                inflated[member] = values[rep]
                added[member] = rep
    logger.info(f"Inflated trait values to {len(added)} cluster members")
    return inflated, added


def write_trait_table(fh: TextIO, values: Mapping[str, float],
                      provenance: Optional[Mapping[str, str]] = None) -> int:
    """Write ID, trait and provenance columns, sorted by ID."""
    fh.write("#ID\tTrait\tProvenance\n")
    n = 0
    for name in natural_order(values):
        source = provenance.get(name, "observed") if provenance else "observed"
        fh.write(f"{name}\t{format_value(values[name])}\t{source}\n")
        n += 1
    return n
