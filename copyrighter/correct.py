"""
Trait-based correction of community abundance tables.

Each taxon's abundance is divided by its trait value (16S copy number or
genome length) and the result is renormalized per sample:

    weight_i   = abundance_i / trait_i
    relative_i = weight_i / sum(weight)
    avg_trait  = sum(abundance_i * trait_i) / sum(abundance_i)

When the total abundance T of a sample is known (qPCR, cell counts...),
the corrected total is T / avg_trait and absolute_i = relative_i * that.
Sums run over the taxa retained in the sample: taxa without a trait value
are either skipped or given a default trait, depending on the config.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, TextIO

import numpy as np
import pandas as pd

from .config import CorrectionConfig
from .errors import EmptySampleError, InvalidTraitValue, MalformedRecord, UnmatchedTaxaError
from .lookup import normalize_name

logger = logging.getLogger(__name__)

DESCRIPTION_COLUMNS = ("taxonomy", "description", "lineage")
FLOAT_FORMAT = "%.15g"


@dataclass
class SampleCorrection:
    relative: Dict[str, float]
    average_trait: float
    absolute: Optional[Dict[str, float]] = None
    corrected_total: Optional[float] = None
    dropped: List[str] = field(default_factory=list)


def correct_sample(counts: Mapping[str, float], traits: Mapping[str, float],
                   total: Optional[float] = None, sample: str = "sample",
                   default_trait: Optional[float] = None) -> SampleCorrection:
    """Correct the abundances of one sample.

    Taxa with zero abundance are ignored. Taxa absent from `traits` get
    `default_trait` if one is given and are dropped otherwise.
    """
    retained: Dict[str, float] = {}
    used: Dict[str, float] = {}
    dropped = []
    for taxon, count in counts.items():
        if not count:
            continue
        trait = traits.get(taxon, default_trait)
        if trait is None:
            dropped.append(taxon)
            continue
        if not trait > 0 or math.isinf(trait):
            raise InvalidTraitValue(taxon, trait)
        retained[taxon] = float(count)
        used[taxon] = float(trait)
    if not retained:
        raise EmptySampleError(sample)
    if dropped:
        logger.debug(f"Sample {sample}: no trait value for {len(dropped)} taxa, skipped")

    abundance = np.array(list(retained.values()))
    trait_values = np.array([used[t] for t in retained])
    weights = abundance / trait_values
    relative = weights / weights.sum()
    average_trait = float((abundance * trait_values).sum() / abundance.sum())

    result = SampleCorrection(
        relative=dict(zip(retained, relative.tolist())),
        average_trait=average_trait,
        dropped=dropped,
    )
    if total is not None:
        result.corrected_total = total / average_trait
        result.absolute = {t: r * result.corrected_total for t, r in result.relative.items()}
    return result


@dataclass
class CorrectionResult:
    """Corrected tables of a community (taxa as rows, samples as columns)."""
    relative: pd.DataFrame
    average_trait: pd.Series
    absolute: Optional[pd.DataFrame] = None
    corrected_totals: Optional[pd.Series] = None
    dropped: Dict[str, List[str]] = field(default_factory=dict)
    descriptions: Optional[Dict[str, str]] = None

    @property
    def combined(self) -> Optional[pd.DataFrame]:
        """Relative and absolute abundance of each sample side by side."""
        if self.absolute is None:
            return None
        cols = {}
        for sample in self.relative.columns:
            cols[f"{sample} relative"] = self.relative[sample]
            cols[f"{sample} absolute"] = self.absolute[sample]
        return pd.DataFrame(cols, index=self.relative.index)


def resolve_traits(taxa, by_id: Mapping[str, float], by_desc: Mapping[str, float],
                   lookup: str, descriptions: Optional[Mapping[str, str]] = None) -> Dict[str, float]:
    """Trait value of each taxon, looked up by ID or by description."""
    traits = {}
    for taxon in taxa:
        if lookup == "id":
            value = by_id.get(taxon)
        else:
            desc = descriptions.get(taxon, taxon) if descriptions else taxon
            value = by_desc.get(desc)
        if value is not None:
            traits[taxon] = value
    return traits


def correct_community(table: pd.DataFrame, by_id: Mapping[str, float], by_desc: Mapping[str, float],
                      config: Optional[CorrectionConfig] = None,
                      totals: Optional[Mapping[str, float]] = None,
                      descriptions: Optional[Mapping[str, str]] = None) -> CorrectionResult:
    """Correct every sample (column) of a community table."""
    config = config or CorrectionConfig()
    config.validate()
    present = table.index[(table > 0).any(axis=1)]
    traits = resolve_traits(present, by_id, by_desc, config.lookup, descriptions)
    if len(present) and not traits:
        other = "desc" if config.lookup == "id" else "id"
        raise UnmatchedTaxaError(
            f"None of the {len(present)} taxa was found in the trait table by {config.lookup}, "
            f"try lookup by {other}")
    logger.info(f"Found trait values for {len(traits)} of {len(present)} taxa (lookup by {config.lookup})")
    default = config.default_trait if config.missing == "default" else None

    relative = {}
    absolute = {}
    average = {}
    corrected_totals = {}
    dropped = {}
    for sample in table.columns:
        total = None
        if totals is not None:
            total = totals.get(str(sample))
            if total is None:
                logger.warning(f"No total abundance for sample {sample}")
        res = correct_sample(table[sample].to_dict(), traits, total, str(sample), default)
        relative[sample] = res.relative
        average[sample] = res.average_trait
        if res.dropped:
            dropped[str(sample)] = res.dropped
        if res.absolute is not None:
            absolute[sample] = res.absolute
            corrected_totals[sample] = res.corrected_total
        logger.info(f"Sample {sample}: average trait {res.average_trait:.4g}, "
                    f"{len(res.relative)} taxa corrected, {len(res.dropped)} skipped")

    rel_df = pd.DataFrame(relative, index=table.index, columns=table.columns).fillna(0.0)
    result = CorrectionResult(
        relative=rel_df,
        average_trait=pd.Series(average, dtype=float),
        dropped=dropped,
        descriptions=dict(descriptions) if descriptions else None,
    )
    if totals is not None:
        # samples without a total stay NaN
        abs_df = pd.DataFrame(absolute, index=table.index, columns=table.columns)
        if absolute:
            abs_df[list(absolute)] = abs_df[list(absolute)].fillna(0.0)
        result.absolute = abs_df
        result.corrected_totals = pd.Series(corrected_totals, index=table.columns, dtype=float)
    return result


def _header_row(path: str) -> int:
    """Line number (0-based) of the header of a community table.

    The header is the first line not starting with '#', unless the '#' line
    right above it has the same number of fields (a "#OTU ID" header).
    """
    previous = None
    with open(path, "r") as fh:
        for i, line in enumerate(fh):
            if line.startswith("#"):
                previous = line
                continue
            if previous is not None and previous.count("\t") == line.count("\t"):
                return i - 1
            return i
    return 0


def read_community_table(path: str):
    """Read a tab-delimited taxa x samples table (QIIME classic OTU table style).

    Comment lines before the header are skipped; the header may itself start
    with '#' ("#OTU ID"). A taxonomy/description column, if any, is split off.
    Returns (counts DataFrame, descriptions dict or None).
    """
    header_row = _header_row(path)
    table = pd.read_csv(path, sep="\t", skiprows=header_row, dtype=str)
    if table.shape[1] < 2:
        raise MalformedRecord(path, header_row + 1, "expected a taxon column and at least one sample column")
    first = table.columns[0]
    table = table.rename(columns={first: first.lstrip("#").strip() or "taxon"})
    table = table.set_index(table.columns[0])
    table.index = table.index.astype(str)

    descriptions = None
    for col in table.columns:
        if normalize_name(str(col)) in DESCRIPTION_COLUMNS:
            descriptions = {k: v for k, v in table.pop(col).items() if isinstance(v, str)}
            break
    counts = table.apply(pd.to_numeric, errors="coerce")
    n_bad = int(counts.isna().sum().sum())
    if n_bad:
        logger.warning(f"{path}: {n_bad} non-numeric abundance values treated as 0")
    counts = counts.fillna(0.0)
    if (counts < 0).any().any():
        raise MalformedRecord(path, header_row + 1, "negative abundance values")
    logger.info(f"Read {counts.shape[0]} taxa in {counts.shape[1]} samples from {path}")
    return counts, descriptions


def _write_table(df: pd.DataFrame, fh: TextIO, descriptions: Optional[Mapping[str, str]],
                 footer: Mapping[str, pd.Series]) -> None:
    out = df.copy()
    if descriptions:
        out["taxonomy"] = [descriptions.get(t, "") for t in out.index]
    out.to_csv(fh, sep="\t", index_label="#OTU ID", float_format=FLOAT_FORMAT)
    for label, values in footer.items():
        cells = [FLOAT_FORMAT % values[c] if c in values.index and pd.notna(values[c]) else "NA"
                 for c in df.columns]
        fh.write(f"#{label}\t" + "\t".join(cells) + "\n")


def write_relative(result: CorrectionResult, fh: TextIO) -> None:
    """Relative abundances with a trailing average trait line."""
    _write_table(result.relative, fh, result.descriptions, {"Average trait": result.average_trait})


def write_absolute(result: CorrectionResult, fh: TextIO) -> None:
    if result.absolute is None:
        raise ValueError("No absolute abundances, total abundances were not given")
    _write_table(result.absolute, fh, result.descriptions,
                 {"Average trait": result.average_trait, "Corrected total": result.corrected_totals})


def write_combined(result: CorrectionResult, fh: TextIO) -> None:
    combined = result.combined
    if combined is None:
        raise ValueError("No combined table, total abundances were not given")
    footer = {}
    for label, series in (("Average trait", result.average_trait),
                          ("Corrected total", result.corrected_totals)):
        footer[label] = pd.Series({f"{s} {kind}": series[s] for s in result.relative.columns
                                   for kind in ("relative", "absolute")})
    _write_table(combined, fh, result.descriptions, footer)
