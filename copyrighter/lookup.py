"""
Readers for the tab-delimited tables consumed by the pipeline.

Column names are resolved fuzzily: matching ignores case, whitespace,
underscores and dashes, and a wanted name only needs to be contained in a
header field ("16S" finds "16S rRNA Count").
"""
from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import ColumnNotFound, MalformedRecord

logger = logging.getLogger(__name__)

MISSING_TOKENS = {"", "na", "nan", "-", "none", "null"}


def normalize_name(name: str) -> str:
    return re.sub(r"[\s_-]", "", name).lower()


def resolve_columns(header_fields: Sequence[str], wanted_names: Sequence[str]) -> List[int]:
    """Find the column index of each wanted name in a header.

    For each wanted name, in order, the first header field that contains it
    (after normalization) is picked. A field claimed by an earlier name is
    not considered for later ones.
    """
    fields = [normalize_name(f) for f in header_fields]
    claimed = set()
    col_nums: List[int] = []
    for name in wanted_names:
        wanted = normalize_name(name)
        for col_num, field in enumerate(fields):
            if col_num not in claimed and wanted in field:
                claimed.add(col_num)
                col_nums.append(col_num)
                break
        else:
            raise ColumnNotFound(name)
    return col_nums


def resolve_optional_columns(header_fields: Sequence[str], wanted_names: Sequence[str],
                             taken: Sequence[int] = ()) -> List[Optional[int]]:
    """Like resolve_columns, but a missing column yields None instead of failing."""
    fields = [normalize_name(f) for f in header_fields]
    claimed = set(taken)
    col_nums: List[Optional[int]] = []
    for name in wanted_names:
        wanted = normalize_name(name)
        found = None
        for col_num, field in enumerate(fields):
            if col_num not in claimed and wanted in field:
                found = col_num
                claimed.add(col_num)
                break
        col_nums.append(found)
    return col_nums


def parse_value(token: Optional[str]) -> Optional[float]:
    """Convert a table cell to float, None for NA-like or non-numeric cells."""
    if token is None:
        return None
    token = token.strip()
    if token.lower() in MISSING_TOKENS:
        return None
    try:
        return float(token)
    except ValueError:
        return None


def _data_lines(path: str) -> Iterator[Tuple[int, str]]:
    with open(path, "r") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.rstrip("\r\n")
            if not line.strip() or line.startswith("#"):
                continue
            yield line_no, line


def read_two_column_lookup(path: str) -> Dict[str, str]:
    """Read a 2-column lookup file (e.g. Greengenes taxonomy, IMG to GG IDs).

    Blank lines and comments are skipped and the last occurrence of a key
    wins.
    """
    lookup: Dict[str, str] = {}
    for line_no, line in _data_lines(path):
        cols = line.split("\t")
        if len(cols) < 2:
            logger.warning(str(MalformedRecord(path, line_no, "expected 2 tab-separated columns")))
            continue
        lookup[cols[0]] = cols[1]
    logger.info(f"Read {len(lookup)} entries from {path}")
    return lookup


class TableReader:
    """Read a headed tab-delimited table whose columns are found by name.

    Required columns must exist (ColumnNotFound otherwise), optional ones
    may be absent. Data lines with a wrong number of columns, or an empty
    key, are logged and skipped; their count is kept in `skipped`.
    """

    def __init__(self, path: str, required: Sequence[str], optional: Sequence[str] = (),
                 header_prefix: str = "#"):
        self.path = path
        self.required = list(required)
        self.optional = list(optional)
        self.header_prefix = header_prefix
        self.skipped = 0
        self.header: List[str] = []
        self.columns: Dict[str, Optional[int]] = {}

    def _read_header(self, fh) -> int:
        for line_no, line in enumerate(fh, 1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            self.header = line.lstrip(self.header_prefix).split("\t")
            req = resolve_columns(self.header, self.required)
            opt = resolve_optional_columns(self.header, self.optional, taken=req)
            self.columns = dict(zip(self.required, req))
            self.columns.update(zip(self.optional, opt))
            return line_no
        raise MalformedRecord(self.path, 0, "no header line found")

    def __iter__(self) -> Iterator[Dict[str, Optional[str]]]:
        with open(self.path, "r") as fh:
            line_no = self._read_header(fh)
            for line in fh:
                line_no += 1
                line = line.rstrip("\r\n")
                if not line.strip() or line.startswith("#"):
                    continue
                try:
                    yield self._parse_line(line, line_no)
                except MalformedRecord as e:
                    self.skipped += 1
                    logger.warning(f"Skipping line: {e}")

    def _parse_line(self, line: str, line_no: int) -> Dict[str, Optional[str]]:
        cols = line.split("\t")
        if len(cols) != len(self.header):
            raise MalformedRecord(self.path, line_no,
                                  f"expected {len(self.header)} columns, got {len(cols)}")
        record = {}
        for name, idx in self.columns.items():
            record[name] = cols[idx].strip() if idx is not None else None
        key = self.required[0] if self.required else None
        if key is not None and not record[key]:
            raise MalformedRecord(self.path, line_no, f"missing value for '{key}'")
        return record


def read_trait_table(path: str, id_col: str = "id", trait_col: str = "trait",
                     desc_col: Optional[str] = "desc") -> Tuple[Dict[str, float], Dict[str, float]]:
    """Read a trait table into ID-keyed and description-keyed maps.

    Zero or non-numeric trait values are treated as missing and left out.
    """
    optional = [desc_col] if desc_col else []
    reader = TableReader(path, [id_col, trait_col], optional)
    by_id: Dict[str, float] = {}
    by_desc: Dict[str, float] = {}
    for rec in reader:
        value = parse_value(rec[trait_col])
        if not value:
            continue
        by_id[rec[id_col]] = value
        if desc_col and rec.get(desc_col):
            by_desc[rec[desc_col]] = value
    logger.info(f"Read {len(by_id)} trait values from {path}")
    return by_id, by_desc


def read_total_abundance(path: str) -> Dict[str, float]:
    """Read a sample name to total abundance file (qPCR, cell counts, ...)."""
    totals: Dict[str, float] = {}
    for line_no, line in _data_lines(path):
        cols = line.split("\t")
        value = parse_value(cols[1]) if len(cols) >= 2 else None
        if value is None:
            # Header lines are tolerated, anything else is reported
            if line_no > 1 or len(cols) < 2:
                logger.warning(str(MalformedRecord(path, line_no, "expected sample name and numeric total")))
            continue
        totals[cols[0]] = value
    return totals


def read_cluster_map(path: str) -> Dict[str, List[str]]:
    """Read an OTU map (cluster ID, representative ID, member IDs...).

    Returns representative ID -> all IDs of the cluster, representative
    included.
    """
    clusters: Dict[str, List[str]] = {}
    for line_no, line in _data_lines(path):
        cols = [c for c in line.split("\t") if c]
        if len(cols) < 2:
            logger.warning(str(MalformedRecord(path, line_no, "expected cluster and representative IDs")))
            continue
        rep = cols[1]
        members = clusters.setdefault(rep, [rep])
        for member in cols[2:]:
            if member not in members:
                members.append(member)
    return clusters


def natural_order(keys: Iterable[str]) -> List[str]:
    """Sort numerically when every key is a number, lexicographically otherwise."""
    keys = list(keys)
    try:
        return sorted(keys, key=float)
    except ValueError:
        return sorted(keys)


def format_value(value: Optional[float]) -> str:
    """Table cell for a number, '-' when missing."""
    if value is None:
        return "-"
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.15g}"
