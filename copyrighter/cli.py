#!/usr/bin/env python3
"""
Copyrighter unified CLI

Subcommands:
- combine:   Join IMG metadata with Greengenes IDs and taxonomy
- reconcile: Flag and resolve dodgy 16S copy numbers, write a trait table
- estimate:  Estimate traits of unmeasured tree leaves
- clades:    Average traits by clade (or per genome)
- correct:   Correct community abundances by copy number or genome length

Config:
- Accepts a unified TOML (see config.sample.toml) with sections [combine],
  [reconcile], [estimate], [clades], [correct]
- CLI flags override TOML
"""
from __future__ import annotations

import argparse
import contextlib
import logging
import sys
from typing import Any, Dict, List, Optional

from . import __version__
from .clades import GG_DEPTH, IMG_DEPTH, aggregate_clades, genome_summary, write_clade_summary, write_clade_trait_table
from .config import CorrectionConfig, EstimationConfig, ReconcileConfig, load_toml
from .correct import correct_community, read_community_table, write_absolute, write_combined, write_relative
from .errors import CopyrighterError
from .estimate import (average_known, estimate_traits, inflate_clusters, read_observations,
                       remove_outliers, write_trait_table)
from .lookup import read_cluster_map, read_total_abundance, read_trait_table, read_two_column_lookup
from .metadata import attach_greengenes, read_combined_table, read_img_metadata, read_rrndb, write_combined_table
from .reconcile import Reconciler, read_evidence_table
from .tree import TreeTemplate

logger = logging.getLogger(__name__)

CLADE_TRAITS = ["16S Count", "Genome Length"]


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
        handlers=handlers,
        force=True,
    )


@contextlib.contextmanager
def _output(path: Optional[str]):
    if not path or path == "-":
        yield sys.stdout
    else:
        with open(path, "w") as fh:
            yield fh


def _missing(section: str, conf: Dict[str, Any], keys: List[str]) -> bool:
    missing = [k for k in keys if not conf.get(k)]
    for k in missing:
        print(f"[{section}] missing required: {k}", file=sys.stderr)
    return bool(missing)


def sub_combine(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    conf = (cfg.get("combine") or {}).copy()
    if args.img_metadata: conf["img_metadata"] = args.img_metadata
    if args.gg_taxonomy: conf["gg_taxonomy"] = args.gg_taxonomy
    if args.img_to_gg: conf["img_to_gg"] = args.img_to_gg
    if args.finished_only: conf["finished_only"] = True
    if args.out: conf["out"] = args.out
    if _missing("combine", conf, ["img_metadata", "gg_taxonomy", "img_to_gg"]):
        return 2

    records = read_img_metadata(conf["img_metadata"], finished_only=bool(conf.get("finished_only")))
    img_to_gg = read_two_column_lookup(conf["img_to_gg"])
    gg_taxonomy = read_two_column_lookup(conf["gg_taxonomy"])
    records = attach_greengenes(records, img_to_gg, gg_taxonomy)
    with _output(conf.get("out")) as fh:
        n = write_combined_table(records, fh)
    n_gg = sum(1 for r in records if r.gg_id)
    logger.info(f"Wrote {n} genomes, {n_gg} with a Greengenes ID")
    return 0


def sub_reconcile(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    conf = (cfg.get("reconcile") or {}).copy()
    if args.evidence: conf["evidence"] = args.evidence
    if args.rrndb: conf["rrndb"] = args.rrndb
    if args.out: conf["out"] = args.out
    if args.report: conf["report"] = args.report
    if args.discard_level: conf["discard_level"] = args.discard_level
    if args.sane_min is not None: conf["sane_min"] = args.sane_min
    if args.sane_max is not None: conf["sane_max"] = args.sane_max
    if args.check_corpus_species: conf["check_corpus_species"] = True
    if args.check_assembly: conf["check_assembly"] = True
    if _missing("reconcile", conf, ["evidence"]):
        return 2

    config = ReconcileConfig.from_dict(conf)
    reconciler = Reconciler(config)
    rrndb = read_rrndb(conf["rrndb"]) if conf.get("rrndb") else None
    evidence = read_evidence_table(conf["evidence"], rrndb, corpus_stats=config.check_corpus_species)
    table, report = reconciler.reconcile(evidence)

    provenance = {e.taxon: e.action for e in report.events if e.action in ("corrected", "substituted")}
    with _output(conf.get("out")) as fh:
        write_trait_table(fh, table, provenance)
    if conf.get("report"):
        with open(conf["report"], "w") as fh:
            fh.write(f"# {report.summary()}\n")
            fh.write("#Action\tID\tSeverity\tOld\tNew\tRule\tReasons\n")
            for event in report.events:
                fh.write(f"{event}\n")
    return 0


def sub_estimate(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    conf = (cfg.get("estimate") or {}).copy()
    if args.tree: conf["tree"] = args.tree
    if args.traits: conf["traits"] = args.traits
    if args.clusters: conf["clusters"] = args.clusters
    if args.out: conf["out"] = args.out
    if args.workers is not None: conf["workers"] = args.workers
    if args.min_branch_length is not None: conf["min_branch_length"] = args.min_branch_length
    if args.remove_outliers: conf["remove_outliers"] = True
    if args.no_progress: conf["progress"] = False
    if _missing("estimate", conf, ["tree", "traits"]):
        return 2

    config = EstimationConfig.from_dict(conf)
    config.validate()
    observations = read_observations(conf["traits"])
    if config.remove_outliers:
        observations, _ = remove_outliers(observations)
    known = average_known(observations)
    template = TreeTemplate.from_file(conf["tree"])
    estimates = estimate_traits(template, known, config=config)

    values = dict(known)
    values.update(estimates)
    provenance = {name: "estimated" for name in estimates}
    if conf.get("clusters"):
        values, added = inflate_clusters(values, read_cluster_map(conf["clusters"]))
        for member, rep in added.items():
            provenance[member] = f"{provenance.get(rep, 'observed')} via {rep}"
    with _output(conf.get("out")) as fh:
        n = write_trait_table(fh, values, provenance)
    logger.info(f"Wrote {n} trait values ({len(known)} observed, {len(estimates)} estimated)")
    return 0


def sub_clades(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    conf = (cfg.get("clades") or {}).copy()
    if args.genomes: conf["genomes"] = args.genomes
    if args.out: conf["out"] = args.out
    if args.taxonomy: conf["taxonomy"] = args.taxonomy
    if args.per_genome: conf["per_genome"] = True
    if args.trait_table: conf["trait_table"] = args.trait_table
    if args.trait: conf["trait"] = args.trait
    if _missing("clades", conf, ["genomes"]):
        return 2
    taxonomy = conf.get("taxonomy", "gg")
    if taxonomy not in ("gg", "img"):
        print(f"[clades] taxonomy must be 'gg' or 'img', not {taxonomy!r}", file=sys.stderr)
        return 2

    records = read_combined_table(conf["genomes"])
    traits = [{"16S Count": r.ssu_count, "Genome Length": r.genome_length} for r in records]
    if conf.get("per_genome"):
        levels = [genome_summary(zip((r.img_id for r in records), traits))]
    else:
        lineages = [(r.gg_tax if taxonomy == "gg" else r.img_tax) or "" for r in records]
        depth = GG_DEPTH if taxonomy == "gg" else IMG_DEPTH
        levels = aggregate_clades(zip(lineages, traits), depth=depth)
    with _output(conf.get("out")) as fh:
        write_clade_summary(levels, CLADE_TRAITS, fh)
    if conf.get("trait_table"):
        trait = "Genome Length" if conf.get("trait", "16S") == "length" else "16S Count"
        with open(conf["trait_table"], "w") as fh:
            write_clade_trait_table(levels, trait, fh)
    return 0


def sub_correct(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    conf = (cfg.get("correct") or {}).copy()
    if args.community: conf["community"] = args.community
    if args.traits: conf["traits"] = args.traits
    if args.totals: conf["totals"] = args.totals
    if args.lookup: conf["lookup"] = args.lookup
    if args.missing: conf["missing"] = args.missing
    if args.default_trait is not None: conf["default_trait"] = args.default_trait
    if args.relative_out: conf["relative_out"] = args.relative_out
    if args.absolute_out: conf["absolute_out"] = args.absolute_out
    if args.combined_out: conf["combined_out"] = args.combined_out
    if _missing("correct", conf, ["community", "traits"]):
        return 2

    config = CorrectionConfig.from_dict(conf)
    config.validate()
    table, descriptions = read_community_table(conf["community"])
    by_id, by_desc = read_trait_table(conf["traits"])
    totals = read_total_abundance(conf["totals"]) if conf.get("totals") else None
    result = correct_community(table, by_id, by_desc, config, totals, descriptions)

    with _output(conf.get("relative_out")) as fh:
        write_relative(result, fh)
    if result.absolute is not None:
        if conf.get("absolute_out"):
            with open(conf["absolute_out"], "w") as fh:
                write_absolute(result, fh)
        if conf.get("combined_out"):
            with open(conf["combined_out"], "w") as fh:
                write_combined(result, fh)
    elif conf.get("absolute_out") or conf.get("combined_out"):
        logger.warning("No total abundance file given, absolute and combined tables not written")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Copy number and genome length correction of community profiles")
    p.add_argument("--config", help="Unified TOML with [combine], [reconcile], [estimate], [clades], [correct] sections")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    p.add_argument("--log-file")
    p.add_argument("--version", action="version", version=f"copyrighter {__version__}")
    sp = p.add_subparsers(dest="cmd", required=True)

    # combine
    pc = sp.add_parser("combine", help="Combine IMG metadata with Greengenes IDs and taxonomy")
    pc.add_argument("--img-metadata")
    pc.add_argument("--gg-taxonomy")
    pc.add_argument("--img-to-gg")
    pc.add_argument("--finished-only", action="store_true")
    pc.add_argument("--out")

    # reconcile
    pr = sp.add_parser("reconcile", help="Flag and resolve dodgy 16S copy numbers")
    pr.add_argument("--evidence", help="Per-genome table of IMG, RNAmmer and INFERNAL 16S counts")
    pr.add_argument("--rrndb")
    pr.add_argument("--out")
    pr.add_argument("--report", help="Write one line per correction, substitution or discard")
    pr.add_argument("--discard-level", choices=["dodgy", "very_dodgy"])
    pr.add_argument("--sane-min", type=float)
    pr.add_argument("--sane-max", type=float)
    pr.add_argument("--check-corpus-species", action="store_true")
    pr.add_argument("--check-assembly", action="store_true")

    # estimate
    pe = sp.add_parser("estimate", help="Estimate traits of tree leaves without a known value")
    pe.add_argument("--tree", help="Newick tree")
    pe.add_argument("--traits", help="Trait table of observed values")
    pe.add_argument("--clusters", help="OTU map to inflate values to cluster members")
    pe.add_argument("--out")
    pe.add_argument("--workers", type=int)
    pe.add_argument("--min-branch-length", type=float)
    pe.add_argument("--remove-outliers", action="store_true")
    pe.add_argument("--no-progress", action="store_true")

    # clades
    pl = sp.add_parser("clades", help="Average traits by clade")
    pl.add_argument("--genomes", help="Combined genome table")
    pl.add_argument("--out")
    pl.add_argument("--taxonomy", choices=["gg", "img"])
    pl.add_argument("--per-genome", action="store_true")
    pl.add_argument("--trait-table", help="Also write a lineage-keyed trait table")
    pl.add_argument("--trait", choices=["16S", "length"])

    # correct
    pk = sp.add_parser("correct", help="Correct community abundances")
    pk.add_argument("--community", help="Tab-delimited taxa x samples table")
    pk.add_argument("--traits", help="Trait table with id, trait and desc columns")
    pk.add_argument("--totals", help="Sample to total abundance file")
    pk.add_argument("--lookup", choices=["id", "desc"],
                    help="Match taxa by trait table ID or by description (default: desc). "
                         "Tables written by estimate and reconcile have no description, use id with them")
    pk.add_argument("--missing", choices=["skip", "default"])
    pk.add_argument("--default-trait", type=float)
    pk.add_argument("--relative-out")
    pk.add_argument("--absolute-out")
    pk.add_argument("--combined-out")
    return p


COMMANDS = {
    "combine": sub_combine,
    "reconcile": sub_reconcile,
    "estimate": sub_estimate,
    "clades": sub_clades,
    "correct": sub_correct,
}


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    try:
        cfg = load_toml(args.config)
        rc = COMMANDS[args.cmd](args, cfg)
    except (CopyrighterError, OSError) as e:
        logger.error(str(e))
        rc = 1
    except ValueError as e:
        # invalid configuration values
        logger.error(f"Invalid configuration: {e}")
        rc = 1
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
