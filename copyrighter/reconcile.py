"""
Reconcile 16S copy numbers reported by several imperfect sources.

Each genome has a primary copy number (IMG annotation), the counts of two
independent gene finders (RNAmmer and INFERNAL/rfam_scan), optionally
computed with and without truncated gene copies, and a reference average
for its species (rrNDB). Inconsistent genomes are flagged as dodgy or very
dodgy, then resolved, kept or discarded following a fixed policy:

  1. both finders agree with each other and with the reference
  2. finder A agrees with the reference
  3. finder B agrees with the reference
  4. no reference, both finders agree and the assembly looks good
  5. primary missing, a secondary rRNA count agrees with the reference
  6. otherwise discard if severity >= discard level, else keep as is

Rules 1-4 are tried on untruncated counts first, then on truncated counts.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from .config import ReconcileConfig
from .lookup import TableReader, parse_value
from .metadata import SpeciesStats, TraitSummary, species_key

logger = logging.getLogger(__name__)


class Severity(IntEnum):
    OK = 0
    DODGY = 1
    VERY_DODGY = 2

    @classmethod
    def from_name(cls, name: str) -> "Severity":
        return cls[name.upper()]

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


def ssu_threshold(mean_copy: float) -> float:
    """Max expected deviation from a species average copy number.

    Linear fit on rrNDB: D = 0.10377 X + 0.72642
    """
    return 0.10377 * mean_copy + 0.72642


def near_average(copy_num: float, mean_copy: float, multiplier: int = 1) -> bool:
    """Whether a copy number is within the tolerance band of a species average.

    The band is widened by 20% and by `multiplier`, rounded outward to whole
    copies, and never goes below 1.
    """
    thr = 1.2 * multiplier * ssu_threshold(mean_copy)
    upper = math.ceil(mean_copy + thr)
    lower = max(math.floor(mean_copy - thr), 1)
    return lower <= copy_num <= upper


def _same(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9)


def _present(value: Optional[float]) -> Optional[float]:
    # a count of 0 means the source found nothing
    if value is None or value == 0:
        return None
    return float(value)


class Resolution(NamedTuple):
    value: float
    rule: str
    substitute: bool = False


@dataclass
class Evidence:
    """Everything known about the copy number of one genome."""
    taxon: str
    primary: float
    finder_a: Optional[float] = None
    finder_b: Optional[float] = None
    finder_a_truncated: Optional[float] = None
    finder_b_truncated: Optional[float] = None
    reference: Optional[TraitSummary] = None
    corpus_reference: Optional[TraitSummary] = None
    secondary: Dict[str, float] = field(default_factory=dict)
    genome_length: Optional[float] = None
    mean_contig_length: Optional[float] = None

    def __post_init__(self):
        self.primary = float(self.primary or 0)
        self.finder_a = _present(self.finder_a)
        self.finder_b = _present(self.finder_b)
        self.finder_a_truncated = _present(self.finder_a_truncated)
        self.finder_b_truncated = _present(self.finder_b_truncated)
        self.secondary = {k: float(v) for k, v in self.secondary.items() if _present(v)}

    def finder_values(self) -> List[float]:
        """Finder counts used to corroborate the primary value."""
        out = []
        for full, trunc in ((self.finder_a, self.finder_a_truncated),
                            (self.finder_b, self.finder_b_truncated)):
            value = full if full is not None else trunc
            if value is not None:
                out.append(value)
        return out


@dataclass
class ReconcileEvent:
    taxon: str
    action: str
    severity: Severity
    old: float
    new: Optional[float]
    rule: str = ""
    reasons: Tuple[str, ...] = ()

    def __str__(self) -> str:
        new = "-" if self.new is None else f"{self.new:g}"
        line = f"{self.action}\t{self.taxon}\t{self.severity.label}\t{self.old:g}\t{new}"
        if self.rule:
            line += f"\t{self.rule}"
        if self.reasons:
            line += "\t" + "; ".join(self.reasons)
        return line


@dataclass
class ReconcileReport:
    """Diagnostics of one reconciliation run."""
    n_dodgy: int = 0
    n_very_dodgy: int = 0
    n_resolved: int = 0
    n_corrected: int = 0
    n_substituted: int = 0
    n_discarded: int = 0
    n_kept: int = 0
    events: List[ReconcileEvent] = field(default_factory=list)

    def record(self, event: ReconcileEvent) -> None:
        self.events.append(event)
        logger.info(str(event))

    def summary(self) -> str:
        return (f"Found {self.n_dodgy} dodgy and {self.n_very_dodgy} very dodgy copy numbers: "
                f"{self.n_resolved} resolved ({self.n_corrected} corrected, "
                f"{self.n_substituted} substituted), {self.n_discarded} discarded, "
                f"{self.n_kept} kept unresolved")


class Reconciler:
    """Flag and resolve inconsistent copy numbers under a ReconcileConfig."""

    def __init__(self, config: Optional[ReconcileConfig] = None):
        self.config = config or ReconcileConfig()
        self.config.validate()
        self.discard_level = Severity.from_name(self.config.discard_level)

    def assembly_severity(self, ev: Evidence) -> Severity:
        cfg = self.config
        mcl = ev.mean_contig_length
        if mcl is None:
            return Severity.OK
        frac = mcl / ev.genome_length if ev.genome_length else None
        if mcl < cfg.contig_length_very_dodgy and (frac is None or frac < cfg.contig_fraction_very_dodgy):
            return Severity.VERY_DODGY
        if mcl < cfg.contig_length_dodgy and (frac is None or frac < cfg.contig_fraction_dodgy):
            return Severity.DODGY
        return Severity.OK

    def _reference_severity(self, value: float, ref: Optional[TraitSummary]) -> Severity:
        if ref is None:
            return Severity.OK
        if not near_average(value, ref.mean, self.config.very_dodgy_multiplier):
            return Severity.VERY_DODGY
        if not near_average(value, ref.mean, self.config.dodgy_multiplier):
            return Severity.DODGY
        return Severity.OK

    def classify(self, ev: Evidence) -> Tuple[Severity, List[str]]:
        """Severity of a genome's primary copy number, with the reasons."""
        cfg = self.config
        severity = Severity.OK
        reasons = []

        def raise_to(level: Severity, reason: str):
            nonlocal severity
            if level > Severity.OK:
                reasons.append(reason)
                severity = max(severity, level)

        value = ev.primary
        if not cfg.sane_min <= value <= cfg.sane_max:
            raise_to(Severity.VERY_DODGY, f"outside [{cfg.sane_min:g}, {cfg.sane_max:g}]")
        if any(not _same(value, f) for f in ev.finder_values()):
            raise_to(Severity.DODGY, "disagrees with gene finders")
        raise_to(self._reference_severity(value, ev.reference), "far from reference species average")
        if cfg.check_corpus_species:
            raise_to(self._reference_severity(value, ev.corpus_reference), "far from corpus species average")
        if cfg.check_assembly:
            raise_to(self.assembly_severity(ev), "poor assembly")
        return severity, reasons

    def resolve(self, ev: Evidence) -> Optional[Resolution]:
        """Return the first applicable resolution rule, None if none applies."""
        ref = ev.reference
        mult = self.config.dodgy_multiplier
        evidence_sets = (
            ("untruncated", ev.finder_a, ev.finder_b),
            ("truncated", ev.finder_a_truncated, ev.finder_b_truncated),
        )
        for label, a, b in evidence_sets:
            if a is None and b is None:
                continue
            if ref is not None:
                if a is not None and b is not None and _same(a, b) and near_average(a, ref.mean, mult):
                    return Resolution(a, f"finders agree with reference ({label})")
                if a is not None and near_average(a, ref.mean, mult):
                    return Resolution(a, f"finder A agrees with reference ({label})")
                if b is not None and near_average(b, ref.mean, mult):
                    return Resolution(b, f"finder B agrees with reference ({label})")
            elif (a is not None and b is not None and _same(a, b)
                  and ev.mean_contig_length is not None and self.assembly_severity(ev) == Severity.OK):
                return Resolution(a, f"finders agree, good assembly ({label})")
        if ref is not None:
            for trait in self.config.secondary_traits:
                proxy = ev.secondary.get(trait)
                if proxy is None or not near_average(proxy, ref.mean, mult):
                    continue
                if ev.primary == 0 or _same(ev.primary, proxy):
                    return Resolution(proxy, f"{trait} count agrees with reference", substitute=True)
        return None

    def reconcile(self, evidence: Iterable[Evidence]) -> Tuple[Dict[str, float], ReconcileReport]:
        """Reduce the evidence to one accepted copy number per genome."""
        report = ReconcileReport()
        table: Dict[str, float] = {}
        for ev in evidence:
            if ev.taxon in table:
                logger.warning(f"Duplicate genome {ev.taxon}, keeping last occurrence")
            severity, reasons = self.classify(ev)
            if severity == Severity.OK:
                table[ev.taxon] = ev.primary
                continue
            if severity == Severity.DODGY:
                report.n_dodgy += 1
            else:
                report.n_very_dodgy += 1
            logger.debug(f"{ev.taxon} is {severity.label}: {'; '.join(reasons)}")

            resolution = self.resolve(ev)
            if resolution is not None:
                value, rule = resolution.value, resolution.rule
                report.n_resolved += 1
                table[ev.taxon] = value
                if _same(value, ev.primary):
                    action = "confirmed"
                elif resolution.substitute:
                    action = "substituted"
                    report.n_substituted += 1
                else:
                    action = "corrected"
                    report.n_corrected += 1
                report.record(ReconcileEvent(ev.taxon, action, severity, ev.primary, value, rule, tuple(reasons)))
            elif severity >= self.discard_level:
                report.n_discarded += 1
                table.pop(ev.taxon, None)
                report.record(ReconcileEvent(ev.taxon, "discarded", severity, ev.primary, None, "", tuple(reasons)))
            else:
                report.n_kept += 1
                table[ev.taxon] = ev.primary
                report.record(ReconcileEvent(ev.taxon, "kept", severity, ev.primary, ev.primary, "", tuple(reasons)))
        logger.info(report.summary())
        return table, report


EVIDENCE_COLUMNS = [
    "RNAmmer 16S truncated", "Infernal 16S truncated", "RNAmmer 16S", "Infernal 16S",
    "domain", "genus", "species", "23S", "5S", "genome length", "scaffold count",
]


def read_evidence_table(path: str, rrndb: Optional[SpeciesStats] = None,
                        corpus_stats: bool = False) -> List[Evidence]:
    """Read per-genome copy number evidence from a tab-delimited table.

    Columns (fuzzy-matched): ID, IMG 16S, RNAmmer 16S, RNAmmer 16S truncated,
    Infernal 16S, Infernal 16S truncated, Domain, Genus, Species, 23S, 5S,
    Genome Length, Scaffold Count. Only ID and IMG 16S are required.
    """
    reader = TableReader(path, required=["ID", "IMG 16S"], optional=EVIDENCE_COLUMNS)
    rows = list(reader)
    corpus = SpeciesStats()
    keys = []
    for rec in rows:
        genus, species = species_key(rec["genus"] or "", rec["species"] or "")
        keys.append((genus, species))
        if corpus_stats and genus and species:
            corpus.add((rec["domain"], genus, species, "16S"), parse_value(rec["IMG 16S"]))
    corpus.finalize()

    evidence = []
    for rec, (genus, species) in zip(rows, keys):
        genome_length = parse_value(rec["genome length"])
        scaffolds = parse_value(rec["scaffold count"])
        evidence.append(Evidence(
            taxon=rec["ID"],
            primary=parse_value(rec["IMG 16S"]) or 0,
            finder_a=parse_value(rec["RNAmmer 16S"]),
            finder_b=parse_value(rec["Infernal 16S"]),
            finder_a_truncated=parse_value(rec["RNAmmer 16S truncated"]),
            finder_b_truncated=parse_value(rec["Infernal 16S truncated"]),
            reference=rrndb.get((None, genus, species, "16S")) if rrndb is not None else None,
            corpus_reference=corpus.get((rec["domain"], genus, species, "16S")),
            secondary={"23S": parse_value(rec["23S"]), "5S": parse_value(rec["5S"])},
            genome_length=genome_length,
            mean_contig_length=genome_length / scaffolds if genome_length and scaffolds else None,
        ))
    logger.info(f"Read copy number evidence for {len(evidence)} genomes from {path}")
    return evidence
