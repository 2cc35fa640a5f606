"""
Genome metadata: IMG exports, Greengenes cross-references and rrNDB.

The IMG metadata export is combined with a Greengenes taxonomy and an
IMG -> Greengenes ID correspondence into one table per genome:

    #IMG ID  IMG Name  IMG Tax  GG ID  GG Tax  16S Count  Genome Length  Gene Count

Per-species statistics (rrNDB averages, corpus averages) live in one flat
map keyed by a (domain, genus, species, trait) tuple.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, TextIO, Tuple

import numpy as np

from .errors import UnsupportedDomain
from .lookup import TableReader, format_value, parse_value

logger = logging.getLogger(__name__)

KNOWN_DOMAINS = ("Bacteria", "Archaea", "Eukaryota")
PROKARYOTES = ("Bacteria", "Archaea")
IMG_RANKS = ["phylum", "class", "order", "family", "genus", "species"]

COMBINED_HEADER = ["IMG ID", "IMG Name", "IMG Tax", "GG ID", "GG Tax",
                   "16S Count", "Genome Length", "Gene Count"]

RRNDB_TRAITS = ["16S", "ITS", "23S", "5S"]


def check_domain(domain: str) -> str:
    """Return the canonical domain name or raise UnsupportedDomain."""
    for known in KNOWN_DOMAINS:
        if domain.strip().lower() == known.lower():
            return known
    raise UnsupportedDomain(domain)


@dataclass
class GenomeRecord:
    """One genome of the IMG metadata."""
    img_id: str
    domain: str
    status: str
    name: str
    lineage: List[str]
    ssu_count: float
    genome_length: Optional[float] = None
    gene_count: Optional[float] = None
    lsu_count: Optional[float] = None
    tsu_count: Optional[float] = None
    scaffold_count: Optional[float] = None
    gg_id: Optional[str] = None
    gg_tax: Optional[str] = None

    @property
    def genus(self) -> str:
        return self.lineage[4] if len(self.lineage) > 4 else ""

    @property
    def species(self) -> str:
        return self.lineage[5] if len(self.lineage) > 5 else ""

    @property
    def img_tax(self) -> str:
        return ";".join(self.lineage)

    @property
    def mean_contig_length(self) -> Optional[float]:
        if self.genome_length and self.scaffold_count:
            return self.genome_length / self.scaffold_count
        return None

    def to_row(self) -> List[str]:
        return [
            self.img_id,
            self.name,
            self.img_tax,
            self.gg_id or "-",
            self.gg_tax or "-",
            format_value(self.ssu_count),
            format_value(self.genome_length),
            format_value(self.gene_count),
        ]


def read_img_metadata(path: str, finished_only: bool = False,
                      domains: Sequence[str] = PROKARYOTES) -> List[GenomeRecord]:
    """Parse an IMG metadata export into genome records.

    Genomes outside `domains`, unfinished genomes (when `finished_only`)
    and genomes without a positive 16S count are left out. Lines with an
    unknown domain are logged and skipped.
    """
    reader = TableReader(
        path,
        required=["taxon_oid", "domain", "status", "genome name"] + IMG_RANKS
                 + ["genome size", "gene count", "16S rRNA count"],
        optional=["23S rRNA count", "5S rRNA count", "scaffold count"],
    )
    records: List[GenomeRecord] = []
    num = 0
    for rec in reader:
        num += 1
        try:
            domain = check_domain(rec["domain"])
        except UnsupportedDomain as e:
            reader.skipped += 1
            logger.warning(f"Skipping genome {rec['taxon_oid']}: {e}")
            continue
        if domain not in domains:
            continue
        if finished_only and rec["status"] != "Finished":
            continue
        ssu_count = parse_value(rec["16S rRNA count"])
        if not ssu_count or ssu_count <= 0:
            continue
        records.append(GenomeRecord(
            img_id=rec["taxon_oid"],
            domain=domain,
            status=rec["status"],
            name=rec["genome name"],
            lineage=[rec[r] for r in IMG_RANKS],
            ssu_count=ssu_count,
            genome_length=parse_value(rec["genome size"]),
            gene_count=parse_value(rec["gene count"]),
            lsu_count=parse_value(rec["23S rRNA count"]),
            tsu_count=parse_value(rec["5S rRNA count"]),
            scaffold_count=parse_value(rec["scaffold count"]),
        ))
    logger.info(f"Read {num} entries from metadata file, kept {len(records)}, skipped {reader.skipped} lines")
    return records


def attach_greengenes(records: Iterable[GenomeRecord], img_to_gg: Dict[str, str],
                      gg_taxonomy: Dict[str, str]) -> List[GenomeRecord]:
    """Fill in Greengenes IDs and taxonomy strings where known."""
    out = []
    for genome in records:
        genome.gg_id = img_to_gg.get(genome.img_id)
        genome.gg_tax = gg_taxonomy.get(genome.gg_id) if genome.gg_id else None
        out.append(genome)
    return out


def write_combined_table(records: Iterable[GenomeRecord], fh: TextIO) -> int:
    fh.write("#" + "\t".join(COMBINED_HEADER) + "\n")
    n = 0
    for genome in records:
        fh.write("\t".join(genome.to_row()) + "\n")
        n += 1
    return n


@dataclass
class CombinedRecord:
    """One line of a combined genome table."""
    img_id: str
    name: str
    img_tax: str
    gg_id: Optional[str]
    gg_tax: Optional[str]
    ssu_count: Optional[float]
    genome_length: Optional[float]
    gene_count: Optional[float]


def read_combined_table(path: str) -> List[CombinedRecord]:
    reader = TableReader(path, required=["IMG ID", "IMG Name", "IMG Tax", "GG ID", "GG Tax",
                                         "16S Count", "Genome Length", "Gene Count"])
    records = []
    for rec in reader:
        records.append(CombinedRecord(
            img_id=rec["IMG ID"],
            name=rec["IMG Name"],
            img_tax=rec["IMG Tax"],
            gg_id=None if rec["GG ID"] in ("", "-") else rec["GG ID"],
            gg_tax=None if rec["GG Tax"] in ("", "-") else rec["GG Tax"],
            ssu_count=parse_value(rec["16S Count"]),
            genome_length=parse_value(rec["Genome Length"]),
            gene_count=parse_value(rec["Gene Count"]),
        ))
    return records


@dataclass(frozen=True)
class TraitSummary:
    mean: float
    std: float
    count: int


@dataclass
class SpeciesStats:
    """Per-species trait statistics in a single flat map.

    Values are accumulated with add() and turned into TraitSummary objects
    by finalize(); lookups before finalization see nothing.
    """
    _pending: Dict[Tuple[Hashable, ...], List[float]] = field(default_factory=lambda: defaultdict(list))
    _summaries: Dict[Tuple[Hashable, ...], TraitSummary] = field(default_factory=dict)

    def add(self, key: Tuple[Hashable, ...], value: Optional[float]) -> None:
        if value is None:
            return
        self._pending[key].append(float(value))

    def finalize(self) -> "SpeciesStats":
        for key, vals in self._pending.items():
            arr = np.asarray(vals, dtype=float)
            self._summaries[key] = TraitSummary(float(arr.mean()), float(arr.std()), int(arr.size))
        self._pending = defaultdict(list)
        return self

    def get(self, key: Tuple[Hashable, ...]) -> Optional[TraitSummary]:
        return self._summaries.get(key)

    def __contains__(self, key) -> bool:
        return key in self._summaries

    def __len__(self) -> int:
        return len(self._summaries)


def species_key(genus: str, species: str) -> Tuple[str, str]:
    """Normalize genus and species names for matching across databases."""
    genus = genus.strip().lower()
    species = species.strip().lower()
    # IMG species are often "Genus species", rrNDB species just "species"
    if species.startswith(genus + " "):
        species = species[len(genus) + 1:]
    return genus, species.split(" ")[0] if species else species


def read_rrndb(path: str) -> SpeciesStats:
    """Average rrNDB copy numbers by (genus, species, trait).

    Domain is unknown in rrNDB, so keys carry None in its place.
    """
    reader = TableReader(path, required=["genus", "species", "strain"] + RRNDB_TRAITS)
    stats = SpeciesStats()
    for rec in reader:
        genus, species = species_key(rec["genus"], rec["species"])
        for trait in RRNDB_TRAITS:
            stats.add((None, genus, species, trait), parse_value(rec[trait]))
    stats.finalize()
    logger.info(f"Summarized rrNDB into {len(stats)} species/trait averages")
    return stats
