"""
Configuration for the copyrighter pipeline steps.

A unified TOML file (see config.sample.toml) holds one section per command:
[combine], [reconcile], [estimate], [clades], [correct]. Command-line flags
override the TOML values.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

SEVERITY_NAMES = ("ok", "dodgy", "very_dodgy")
LOOKUP_METHODS = ("id", "desc")
MISSING_POLICIES = ("skip", "default")


def load_toml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        import tomllib as _toml  # py311+
    except ModuleNotFoundError:
        import tomli as _toml  # type: ignore
    with open(path, "rb") as f:
        return _toml.load(f)


class _FromDict:
    @classmethod
    def from_dict(cls, config_dict: Optional[dict]):
        """Create instance from dictionary, ignoring unknown parameters."""
        valid_params = {f.name for f in fields(cls)}
        filtered_dict = {k: v for k, v in (config_dict or {}).items() if k in valid_params}
        return cls(**filtered_dict)


@dataclass
class ReconcileConfig(_FromDict):
    """Policy of the copy number reconciler."""
    sane_min: float = 1
    sane_max: float = 15
    dodgy_multiplier: int = 1
    very_dodgy_multiplier: int = 2
    discard_level: str = "very_dodgy"
    check_corpus_species: bool = False
    check_assembly: bool = False
    contig_length_dodgy: float = 100_000
    contig_length_very_dodgy: float = 10_000
    contig_fraction_dodgy: float = 0.05
    contig_fraction_very_dodgy: float = 0.005
    secondary_traits: Tuple[str, ...] = ("23S", "5S")

    def __post_init__(self):
        self.secondary_traits = tuple(self.secondary_traits)

    def validate(self) -> None:
        if self.sane_min <= 0 or self.sane_max < self.sane_min:
            raise ValueError("Sane range must satisfy 0 < sane_min <= sane_max")
        if self.dodgy_multiplier < 1 or self.very_dodgy_multiplier < self.dodgy_multiplier:
            raise ValueError("Tolerance multipliers must satisfy 1 <= dodgy <= very_dodgy")
        if self.discard_level not in SEVERITY_NAMES[1:]:
            raise ValueError(f"discard_level must be one of {SEVERITY_NAMES[1:]}")
        if self.contig_length_very_dodgy > self.contig_length_dodgy:
            raise ValueError("contig_length_very_dodgy cannot exceed contig_length_dodgy")
        if self.contig_fraction_very_dodgy > self.contig_fraction_dodgy:
            raise ValueError("contig_fraction_very_dodgy cannot exceed contig_fraction_dodgy")


@dataclass
class EstimationConfig(_FromDict):
    """Settings of the phylogenetic trait estimation."""
    workers: int = 1
    min_branch_length: float = 1e-5
    remove_outliers: bool = False
    progress: bool = True

    def validate(self) -> None:
        if self.workers < 1:
            raise ValueError("Number of workers must be at least 1")
        if self.min_branch_length <= 0:
            raise ValueError("Minimum branch length must be positive")


@dataclass
class CorrectionConfig(_FromDict):
    """Settings of the abundance correction."""
    lookup: str = "desc"
    missing: str = "skip"
    default_trait: Optional[float] = None

    def validate(self) -> None:
        if self.lookup not in LOOKUP_METHODS:
            raise ValueError(f"lookup must be one of {LOOKUP_METHODS}")
        if self.missing not in MISSING_POLICIES:
            raise ValueError(f"missing must be one of {MISSING_POLICIES}")
        if self.missing == "default":
            if self.default_trait is None:
                raise ValueError("A default trait value is required when missing='default'")
            if self.default_trait <= 0:
                raise ValueError("Default trait value must be positive")
