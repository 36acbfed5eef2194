#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Soil amplicon runner: per-run filtering and denoising, cross-run merge and
metadata join.

Overview
--------
1) Load and validate the sample metadata (optional), drop flagged records.
2) Discover raw FASTQs and partition them by sequencing run.
3) For each run: primer trimming (cutadapt), quality filtering and the
   external denoiser, tracking reads per sample at every stage. Each run's
   sequence and tracking tables are written as soon as it finishes.
4) Merge the per-run sequence tables, optionally collapse length variants.
5) Reconcile row labels to external sample IDs and join the metadata.

Outputs (under --out_dir)
-------------------------
- runs/<run>/seqtab.tsv, runs/<run>/track.csv
- merged/seqtab_merged.tsv (and seqtab_collapsed.tsv with --collapse_variants)
- merged/track_all.csv, merged/samples.tsv, merged/asv_sequences.fasta
- run_report.tsv (one row per run), summary.tsv (key/value)
- logs/run_debug.log plus one log per external step

All arguments are named (no positional arguments).
UK English spelling is used in docstrings.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from amplicon_common import (
    _SCRIPT_START_TIME,
    PipelineError,
    Paths,
    log_memory_usage,
    log_section,
    setup_logging,
    summarise_examples,
    write_report_row,
)
from filter_pipeline import DenoiseStage, FilterPipeline, PrimerTrimStage, QualityFilterStage, ReadMode
from metadata_join import (
    MetadataSchema,
    filter_quality_flag,
    id_map_from_metadata,
    join_metadata,
    load_metadata,
    origins_from_metadata,
)
from pipeline_config import GENE_REGIONS, ParameterSet, PipelineConfig
from run_partition import DEFAULT_RUN_PATTERN, RunGroup, files_from_metadata, find_fastqs, partition_runs, write_run_manifest
from sample_ids import IdResolver, ResolutionReport, make_unique
from seqtab_merge import (
    DUPLICATE_POLICIES,
    REPRESENTATIVE_POLICIES,
    collapse_no_mismatch,
    merge_sequence_tables,
    read_seqtab,
    remove_empty,
    total_reads,
    variant_fasta,
    write_seqtab,
)
from stage_tracker import (
    SAMPLE_KEY,
    check_monotonic,
    combine_tracking_tables,
    label_parameter_sets,
    read_tracking,
    survival_summary,
    write_tracking,
)

SWEEP_SEPARATOR = "|"


@dataclass
class RunOutcome:
    """What one run (or one run under one parameter set) produced."""

    key: str
    run_id: str
    tracking: pd.DataFrame
    seqtab: Optional[pd.DataFrame]
    failures: Dict[str, str] = field(default_factory=dict)
    status: str = "ok"


def build_pipeline(config: PipelineConfig) -> FilterPipeline:
    """Trim -> filter -> denoise for the configured read mode."""
    return FilterPipeline(
        [PrimerTrimStage(), QualityFilterStage(), DenoiseStage(config.read_mode)],
        read_mode=config.read_mode,
    )


def _prefix_labels(table: pd.DataFrame, prefix: str) -> pd.DataFrame:
    out = table.copy()
    out[SAMPLE_KEY] = [f"{prefix}{SWEEP_SEPARATOR}{s}" for s in out[SAMPLE_KEY].astype(str)]
    return out


def process_run(
    *,
    pipeline: FilterPipeline,
    group: RunGroup,
    config: PipelineConfig,
    paths: Paths,
    parameter_set: Optional[ParameterSet] = None,
    logger: logging.Logger,
) -> RunOutcome:
    """Run one run through the pipeline, or load its tables with --resume.

    The run's tables are written under ``runs/<run>[/<param set>]`` before
    returning, so a later failure elsewhere never costs this run's work.
    """
    run_dir = paths.run_dir(group.run_id)
    key = group.run_id
    if parameter_set is not None:
        run_dir = run_dir / parameter_set.dirname
        key = f"{group.run_id}/{parameter_set.dirname}"
    seqtab_path = run_dir / "seqtab.tsv"
    track_path = run_dir / "track.csv"

    if config.resume:
        if track_path.exists() and seqtab_path.exists():
            logger.info("%s: resuming from %s", key, run_dir)
            tracking = read_tracking(track_path)
            seqtab = read_seqtab(seqtab_path)
            status = "resumed" if total_reads(seqtab) > 0 else "empty"
            return RunOutcome(key=key, run_id=group.run_id, tracking=tracking, seqtab=seqtab, status=status)
        if track_path.exists() or seqtab_path.exists():
            logger.warning("%s: incomplete outputs in %s; processing the run again.", key, run_dir)

    write_run_manifest(group=group, out_path=run_dir / "manifest.tsv")
    params = config.stage_params(log_dir=paths.logs / key.replace("/", "_"), parameter_set=parameter_set)
    result = pipeline.run(group, run_dir / "work", params)

    tracking = result.tracking
    seqtab = result.seqtab
    if parameter_set is not None:
        tracking = _prefix_labels(tracking, parameter_set.label)
        if seqtab is not None:
            seqtab = _prefix_labels(seqtab, parameter_set.label)

    status = "empty" if result.empty else "ok"
    # track.csv goes last: --resume treats the pair as a finished run.
    write_seqtab(seqtab if seqtab is not None else pd.DataFrame(columns=[SAMPLE_KEY]), seqtab_path)
    write_tracking(tracking, track_path)
    return RunOutcome(
        key=key,
        run_id=group.run_id,
        tracking=tracking,
        seqtab=seqtab,
        failures=result.failures,
        status=status,
    )


def report_run(*, outcome: RunOutcome, paths: Paths, stage_columns: Sequence[str]) -> None:
    """Append one row per run to ``run_report.tsv``."""
    tracking = outcome.tracking
    first, last = stage_columns[0], stage_columns[-1]
    write_report_row(
        report_path=paths.report_tsv,
        fields={
            "run": outcome.key,
            "status": outcome.status,
            "samples": str(len(tracking)),
            "input_reads": str(int(tracking[first].sum()) if first in tracking else 0),
            "final_reads": str(int(tracking[last].sum()) if last in tracking else 0),
            "variants": str(0 if outcome.seqtab is None else outcome.seqtab.shape[1] - 1),
            "failed_units": str(len(outcome.failures)),
            "failed_examples": summarise_examples(sorted(outcome.failures)) or "none",
        },
    )


def process_all_runs(
    *,
    pipeline: FilterPipeline,
    groups: Sequence[RunGroup],
    config: PipelineConfig,
    paths: Paths,
    logger: logging.Logger,
) -> List[RunOutcome]:
    """Process every run (and parameter set), sequentially or on a thread pool.

    A run that raises an I/O or data error is logged and left out; the
    other runs carry on. Configuration errors propagate.
    """
    sets: Sequence[Optional[ParameterSet]] = config.parameter_sets or (None,)
    jobs = [(g, ps) for g in groups for ps in sets]
    report_lock = threading.Lock()

    def _one(job) -> Optional[RunOutcome]:
        group, ps = job
        try:
            outcome = process_run(
                pipeline=pipeline, group=group, config=config,
                paths=paths, parameter_set=ps, logger=logger,
            )
        except (OSError, ValueError) as exc:
            logger.error("Run %s failed: %s", group.run_id, exc, exc_info=True)
            with report_lock:
                write_report_row(
                    report_path=paths.report_tsv,
                    fields={
                        "run": group.run_id if ps is None else f"{group.run_id}/{ps.dirname}",
                        "status": "error",
                        "samples": str(len(group.units)),
                        "input_reads": "0",
                        "final_reads": "0",
                        "variants": "0",
                        "failed_units": str(len(group.units)),
                        "failed_examples": str(exc),
                    },
                )
            return None
        with report_lock:
            report_run(outcome=outcome, paths=paths, stage_columns=pipeline.columns)
        logger.info("%s: %s (%d sample(s))", outcome.key, outcome.status, len(outcome.tracking))
        return outcome

    if config.run_workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=config.run_workers) as pool:
            outcomes = list(pool.map(_one, jobs))
    else:
        outcomes = [_one(j) for j in jobs]
    return [o for o in outcomes if o is not None]


def reconcile_labels(
    labels: Sequence[str], resolver: IdResolver, sweep: bool
) -> Tuple[List[str], ResolutionReport]:
    """Resolve row labels to external IDs; under a sweep only the bare part.

    Returns the new labels and the resolver's report. Under a sweep the
    report counts each bare sample once, not once per parameter set.
    """
    if not sweep:
        return resolver.resolve(labels)
    prefixes, bare = [], []
    for lab in labels:
        pre, sep, rest = lab.partition(SWEEP_SEPARATOR)
        prefixes.append(pre if sep else "")
        bare.append(rest if sep else pre)
    # The same sample recurs once per parameter set.
    distinct = list(dict.fromkeys(bare))
    resolved, report = resolver.resolve(distinct)
    lookup = dict(zip(distinct, resolved))
    new_labels = make_unique(
        f"{p}{SWEEP_SEPARATOR}{lookup[b]}" if p else lookup[b] for p, b in zip(prefixes, bare)
    )
    return new_labels, report


def drop_empty_samples(table: pd.DataFrame, logger: logging.Logger) -> Tuple[pd.DataFrame, List[str]]:
    """Remove all-zero samples and variants; return the table and the dropped sample IDs."""
    trimmed = remove_empty(table)
    kept = set(trimmed[SAMPLE_KEY].astype(str))
    dropped = [s for s in table[SAMPLE_KEY].astype(str) if s not in kept]
    if dropped:
        logger.warning(
            "%d sample(s) had no reads in the merged table and were dropped: %s",
            len(dropped), summarise_examples(dropped),
        )
    return trimmed, dropped


def add_problem(summary: Dict[str, object], key: str, items: Sequence[str]) -> None:
    """Record a recoverable problem as a count plus example identifiers."""
    summary[key] = len(items)
    summary[f"{key}_examples"] = summarise_examples([str(i) for i in items]) or "none"


def write_summary(path: Path, items: Dict[str, object]) -> None:
    """Write a two-column key/value TSV."""
    pd.DataFrame({"key": list(items), "value": [str(v) for v in items.values()]}).to_csv(
        path, sep="\t", index=False
    )


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface for the runner.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with named-only arguments.
    """
    truthy = lambda x: str(x).lower() in {"1", "true", "yes"}  # noqa: E731
    p = argparse.ArgumentParser(
        description="Soil amplicon runner: per-run filtering/denoising, merge and metadata join. "
                    "Named arguments only.",
        allow_abbrev=False,
    )
    p.add_argument("--run_label", default="soil_amplicon", type=str, help="Run label.")
    p.add_argument("--reads_dir", required=True, type=Path, help="Directory of raw FASTQs (recursive).")
    p.add_argument("--out_dir", required=True, type=Path, help="Output directory.")
    p.add_argument("--metadata", default=None, type=Path, help="Sample metadata CSV/TSV.")
    p.add_argument("--select_from_metadata", action="store_true",
                   help="Process only files named in the metadata.")
    p.add_argument("--drop_flagged", default=True, type=truthy,
                   help="Drop metadata records whose QA/QC flag is 'fail'.")
    p.add_argument("--gene_region", choices=list(GENE_REGIONS), default="16S",
                   help="Gene region; sets primer and read-mode defaults.")
    p.add_argument("--read_mode", choices=[m.value for m in ReadMode], default=None,
                   help="paired or single (default: paired for 16S, single for ITS).")
    p.add_argument("--run_pattern", default=DEFAULT_RUN_PATTERN, type=str,
                   help="Regex with one capture group yielding the run ID.")
    # trimming
    p.add_argument("--primer_f", default=None, type=str, help="Forward primer.")
    p.add_argument("--primer_r", default=None, type=str, help="Reverse primer.")
    p.add_argument("--discard_untrimmed", default=True, type=truthy,
                   help="Discard reads lacking primer matches.")
    p.add_argument("--cutadapt", default="cutadapt", type=str, help="cutadapt executable.")
    # filtering
    p.add_argument("--trunc_len", default="240,200", type=str, help="Truncation length F,R (0 = none).")
    p.add_argument("--max_ee", default="2,2", type=str, help="Maximum expected errors F,R.")
    p.add_argument("--trunc_q", default=2, type=int, help="Truncate at first base with quality <= this.")
    p.add_argument("--max_n", default=0, type=int, help="Maximum ambiguous bases.")
    p.add_argument("--min_len", default=50, type=int, help="Minimum read length after truncation.")
    p.add_argument("--param_sweep", default=None, type=Path,
                   help="JSON list of filter-parameter overrides for a sensitivity sweep.")
    # denoising
    p.add_argument("--denoise_command", required=True, type=str,
                   help="Denoiser command template with {input_dir} {output_dir} {params_json} {threads}.")
    p.add_argument("--reference_db", default=None, type=Path,
                   help="Reference database passed through to the denoiser.")
    # merging / joining
    p.add_argument("--on_duplicate", choices=list(DUPLICATE_POLICIES), default="sum",
                   help="Duplicate sample labels across runs: sum or keep separate.")
    p.add_argument("--collapse_variants", action="store_true",
                   help="Collapse variants differing only by length.")
    p.add_argument("--representative_policy", choices=list(REPRESENTATIVE_POLICIES), default="longest",
                   help="Which variant represents a collapsed group.")
    p.add_argument("--min_overlap", default=20, type=int, help="Minimum overlap for collapsing.")
    p.add_argument("--join_how", choices=["left", "inner"], default="left",
                   help="Keep samples without metadata (left) or drop them (inner).")
    # Common
    p.add_argument("--threads", default=4, type=int, help="Threads for heavy steps.")
    p.add_argument("--run_workers", default=1, type=int, help="Runs processed concurrently.")
    p.add_argument("--resume", action="store_true", help="Load runs whose tables already exist.")
    return p


def run_pipeline(config: PipelineConfig, logger: logging.Logger) -> Dict[str, object]:
    """Execute the whole batch; return the summary written to ``summary.tsv``.

    Raises:
        PipelineError: On structural failure (no files, no runs, no tables).
    """
    config.validate()
    paths = Paths(config.out_dir)
    paths.mkdirs()
    schema = MetadataSchema()

    # 1) Metadata
    metadata: Optional[pd.DataFrame] = None
    if config.metadata is not None:
        log_section(logger=logger, title="Metadata")
        metadata = load_metadata(config.metadata, schema)
        logger.info("Loaded %d metadata record(s) from %s", len(metadata), config.metadata)
        if config.drop_flagged:
            metadata = filter_quality_flag(metadata, schema)

    # 2) Files and runs
    log_section(logger=logger, title="Partition")
    if config.select_from_metadata and metadata is not None:
        fastqs = files_from_metadata(metadata=metadata, raw_dir=config.reads_dir, file_column=schema.file_column)
    else:
        fastqs = find_fastqs(reads_dir=config.reads_dir)
    if not fastqs:
        raise PipelineError(f"No FASTQs found under: {config.reads_dir}")
    partition = partition_runs(
        fastqs, run_pattern=config.run_pattern, paired=config.read_mode is ReadMode.PAIRED
    )
    if not partition.groups:
        raise PipelineError("No sequencing runs could be formed from the input files.")
    logger.info("%d file(s) in %d run(s): %s", len(fastqs), len(partition.groups), ", ".join(partition.run_ids))

    # 3) Per-run processing
    log_section(logger=logger, title="Per-run filtering and denoising")
    pipeline = build_pipeline(config)
    outcomes = process_all_runs(
        pipeline=pipeline, groups=partition.groups, config=config, paths=paths, logger=logger
    )
    log_memory_usage(logger, prefix="RUNS DONE")

    tracking_all = combine_tracking_tables({o.key: o.tracking for o in outcomes}, pipeline.columns)
    if config.sweep:
        tracking_all = label_parameter_sets(tracking_all, separator=SWEEP_SEPARATOR)
    check_monotonic(tracking_all, pipeline.columns)
    write_tracking(tracking_all, paths.merged / "track_all.csv")
    survival = survival_summary(tracking_all, pipeline.columns)
    survival.to_csv(paths.merged / "survival.tsv", sep="\t", index=False)

    # 4) Merge
    log_section(logger=logger, title="Merge")
    tables = {o.key: o.seqtab for o in outcomes if o.status != "empty" and o.seqtab is not None}
    empty_runs = [o.key for o in outcomes if o.key not in tables]
    if empty_runs:
        logger.warning("%d run(s) produced no variants: %s", len(empty_runs), summarise_examples(empty_runs))
    if not tables:
        raise PipelineError("No run produced a sequence table; nothing to merge.")

    origins = None
    if metadata is not None and not config.sweep:
        origins = origins_from_metadata(metadata, schema)
    merged = merge_sequence_tables(tables, origins=origins, on_duplicate=config.on_duplicate)
    abundance, empty_samples = drop_empty_samples(merged.table, logger)
    write_seqtab(abundance, paths.merged / "seqtab_merged.tsv")
    logger.info(
        "Merged table: %d sample(s) x %d variant(s), %d read(s)",
        len(abundance), abundance.shape[1] - 1, total_reads(abundance),
    )

    n_collapsed = 0
    if config.collapse_variants:
        collapsed = collapse_no_mismatch(
            abundance, policy=config.representative_policy, min_overlap=config.min_overlap
        )
        abundance = collapsed.table
        n_collapsed = collapsed.n_collapsed
        write_seqtab(abundance, paths.merged / "seqtab_collapsed.tsv")

    # 5) Identifiers and metadata
    log_section(logger=logger, title="Metadata join")
    unresolved: List[str] = []
    unmatched: List[str] = []
    unused: List[str] = []
    if metadata is not None:
        resolver = IdResolver(id_map_from_metadata(metadata, schema))
        abundance = abundance.copy()
        labels, resolution = reconcile_labels(abundance[SAMPLE_KEY].astype(str).tolist(), resolver, config.sweep)
        abundance[SAMPLE_KEY] = labels
        unresolved = resolution.failures
        if config.sweep:
            logger.info("Parameter sweep: sample table holds parameter labels, not metadata.")
            samples = label_parameter_sets(abundance[[SAMPLE_KEY]], separator=SWEEP_SEPARATOR)
        else:
            joined = join_metadata(abundance, metadata, on=schema.sample_column, how=config.join_how)
            abundance, samples = joined.abundance, joined.samples
            unmatched, unused = joined.report.unmatched, joined.report.unused
    else:
        logger.warning("No metadata provided; sample table lists identifiers only.")
        samples = abundance[[SAMPLE_KEY]].copy()
    write_seqtab(abundance, paths.merged / "seqtab_final.tsv")
    samples.to_csv(paths.merged / "samples.tsv", sep="\t", index=False)
    variant_fasta(abundance, paths.merged / "asv_sequences.fasta")

    summary: Dict[str, object] = {
        "run_label": config.run_label,
        "gene_region": config.gene_region,
        "read_mode": config.read_mode.value,
        "runs": len(partition.groups),
        "runs_processed": len(outcomes),
        "samples": len(abundance),
        "variants": abundance.shape[1] - 1,
        "variants_collapsed": n_collapsed,
        "reads": total_reads(abundance),
    }
    add_problem(summary, "runs_empty", empty_runs)
    add_problem(summary, "unpaired_files", [p.name for p in partition.unpaired])
    add_problem(summary, "unassigned_files", [p.name for p in partition.unassigned])
    add_problem(summary, "failed_units", [f"{o.key}:{u}" for o in outcomes for u in sorted(o.failures)])
    add_problem(summary, "duplicate_labels", sorted(merged.duplicates))
    add_problem(summary, "empty_samples_dropped", empty_samples)
    add_problem(summary, "unresolved_ids", unresolved)
    add_problem(summary, "samples_without_metadata", unmatched)
    add_problem(summary, "unused_metadata", unused)
    return summary


def main() -> None:
    """Entry point for the soil amplicon runner."""
    args = build_arg_parser().parse_args()
    logger = setup_logging(out_dir=args.out_dir, run_label=args.run_label)
    logger.info("Start time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(_SCRIPT_START_TIME)))
    log_memory_usage(logger, prefix="START")

    try:
        config = PipelineConfig.from_args(args)
        logger.info(
            "gene_region=%s read_mode=%s threads=%d run_workers=%d",
            config.gene_region, config.read_mode.value, config.threads, config.run_workers,
        )
        summary = run_pipeline(config, logger)
    except PipelineError as exc:
        logger.error("%s", exc)
        sys.exit(2)

    write_summary(config.out_dir / "summary.tsv", summary)
    logger.info("End time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(time.time())))
    log_memory_usage(logger, prefix="END", extra_msg="Pipeline complete")


if __name__ == "__main__":
    main()
