#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Group raw FASTQs by sequencing run and pair forward/reverse mates.

The denoiser learns one error model per call, so its input must never span
more than one sequencing run. This module is the only place that decides
which files belong together. The run ID is taken from the filename with a
regex holding one capture group (default ``^(run[A-Za-z0-9]+)_``), e.g.::

    runB69PP_BMI_Plate37WellA12_16S_B69PP_R1.fastq.gz  ->  runB69PP

Run as a script it writes one tab-separated manifest per run
(``sample-id``, ``forward-absolute-filepath``, ``reverse-absolute-filepath``).
All arguments are named (no positional arguments).
UK English spelling is used in docstrings.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from amplicon_common import ConfigError, PipelineError, get_logger, summarise_examples

log = get_logger("run_partition")

DEFAULT_RUN_PATTERN = r"^(run[A-Za-z0-9]+)_"
FASTQ_EXTS: Tuple[str, ...] = (".fastq.gz", ".fq.gz", ".fastq", ".fq")

# Read-direction marker, e.g. '_R1.fastq.gz', '_R2_001.fastq', or a bare '_R1'.
_MATE_RE = re.compile(r"_R([12])(?=(_[0-9]{3})?(\.|$))")


@dataclass(frozen=True)
class ReadUnit:
    """The files of one sample within one run.

    ``name`` is the forward filename (or the single-end filename). Every stage
    writes its output under the same filename, which is what keys the
    per-sample read tracking from raw input to denoised output.
    """

    name: str
    forward: Path
    reverse: Optional[Path] = None

    @property
    def paired(self) -> bool:
        return self.reverse is not None

    @property
    def files(self) -> List[Path]:
        return [self.forward] + ([self.reverse] if self.reverse is not None else [])

    def relocated(self, directory: Path) -> "ReadUnit":
        """The same unit looked up under another stage's directory."""
        return ReadUnit(
            name=self.name,
            forward=directory / self.forward.name,
            reverse=(directory / self.reverse.name) if self.reverse is not None else None,
        )


@dataclass
class RunGroup:
    """Files of one sequencing run, sorted lexically."""

    run_id: str
    files: List[Path]
    units: List[ReadUnit]


@dataclass
class PartitionResult:
    """Run groups plus the files that could not be placed."""

    groups: List[RunGroup] = field(default_factory=list)
    unpaired: List[Path] = field(default_factory=list)
    unassigned: List[Path] = field(default_factory=list)

    @property
    def run_ids(self) -> List[str]:
        return [g.run_id for g in self.groups]

    def group(self, run_id: str) -> RunGroup:
        for g in self.groups:
            if g.run_id == run_id:
                return g
        raise KeyError(run_id)


def find_fastqs(
    *,
    reads_dir: Path,
    exts: Tuple[str, ...] = FASTQ_EXTS,
) -> List[Path]:
    """Recursively discover FASTQ files under a directory.

    Args:
        reads_dir: Root directory to scan.
        exts: Allowed filename extensions.

    Returns:
        A sorted list of absolute ``Path`` objects to FASTQ files.
    """
    paths: List[Path] = []
    for p in reads_dir.rglob("*"):
        if p.is_file() and any(p.name.endswith(e) for e in exts):
            paths.append(p.resolve())
    return sorted(paths)


def extract_run_id(name: str, run_regex: re.Pattern[str]) -> Optional[str]:
    """Extract the run ID from a filename using a compiled one-group regex."""
    m = run_regex.search(name)
    return m.group(1) if m else None


def mate_of(name: str) -> Tuple[Optional[str], str]:
    """Return ``(direction, key)`` for a filename.

    ``direction`` is '1', '2' or ``None`` when no R1/R2 marker is present;
    ``key`` is the filename with the marker blanked, shared by both mates.
    """
    m = _MATE_RE.search(name)
    if not m:
        return None, name
    return m.group(1), name[: m.start()] + "_R#" + name[m.end():]


def _pair_files(files: List[Path]) -> Tuple[List[ReadUnit], List[Path]]:
    """Pair R1/R2 files of one run; return ``(units, unpaired)``."""
    mates: Dict[str, Dict[str, Path]] = {}
    unpaired: List[Path] = []
    for f in files:
        direction, key = mate_of(f.name)
        if direction is None:
            unpaired.append(f)
            continue
        bucket = mates.setdefault(key, {})
        if direction in bucket:
            # Same key twice in one direction: keep the first, flag the rest.
            unpaired.append(f)
            continue
        bucket[direction] = f

    units: List[ReadUnit] = []
    for key in sorted(mates):
        bucket = mates[key]
        if "1" in bucket and "2" in bucket:
            units.append(ReadUnit(name=bucket["1"].name, forward=bucket["1"], reverse=bucket["2"]))
        else:
            unpaired.extend(bucket.values())
    return units, sorted(unpaired)


def partition_runs(
    paths: Iterable[Path],
    *,
    run_pattern: str = DEFAULT_RUN_PATTERN,
    paired: bool = True,
) -> PartitionResult:
    """Group files by run ID and, in paired mode, drop files lacking a mate.

    Args:
        paths: Raw FASTQ paths in any order.
        run_pattern: Regex with one capture group yielding the run ID.
        paired: Require forward and reverse mates.

    Returns:
        ``PartitionResult`` whose groups keep first-encountered run order and
        list their files lexically. Runs with no files left after mate
        matching are dropped.

    Raises:
        ConfigError: If the pattern does not hold exactly one capture group.
    """
    run_re = re.compile(run_pattern)
    if run_re.groups != 1:
        raise ConfigError(f"Run pattern must contain exactly one capture group: {run_pattern}")

    by_run: Dict[str, List[Path]] = {}
    result = PartitionResult()
    for p in paths:
        p = Path(p)
        run_id = extract_run_id(p.name, run_re)
        if run_id is None:
            result.unassigned.append(p)
            continue
        by_run.setdefault(run_id, []).append(p)

    for run_id, files in by_run.items():
        files = sorted(files)
        if paired:
            units, unpaired = _pair_files(files)
            result.unpaired.extend(unpaired)
            kept = sorted(f for u in units for f in u.files)
        else:
            units = [ReadUnit(name=f.name, forward=f) for f in files]
            kept = files
        if not units:
            log.warning("Run %s has no usable files after mate matching; dropped.", run_id)
            continue
        result.groups.append(RunGroup(run_id=run_id, files=kept, units=units))

    if result.unpaired:
        log.warning(
            "%d file(s) without a forward/reverse mate were excluded: %s",
            len(result.unpaired), summarise_examples([p.name for p in result.unpaired]),
        )
    if result.unassigned:
        log.warning(
            "%d file(s) had no run ID matching %s: %s",
            len(result.unassigned), run_pattern,
            summarise_examples([p.name for p in result.unassigned]),
        )
    return result


def files_from_metadata(
    *,
    metadata: pd.DataFrame,
    raw_dir: Path,
    file_column: str,
) -> List[Path]:
    """Select raw files named in a metadata table that exist under ``raw_dir``.

    The metadata is expected to have been quality-filtered already. Names
    listed in metadata but absent on disk are logged and skipped. The mate of
    every listed file is included when present, since metadata often lists
    only R1.

    Args:
        metadata: Metadata table with one raw filename per row.
        raw_dir: Directory scanned (recursively) for FASTQs.
        file_column: Column holding raw filenames.

    Returns:
        Sorted list of selected paths.
    """
    on_disk = {p.name: p for p in find_fastqs(reads_dir=raw_dir)}
    wanted = {str(n).strip() for n in metadata[file_column].dropna() if str(n).strip()}
    missing: List[str] = []
    selected: Dict[str, Path] = {}
    for name in sorted(wanted):
        if name not in on_disk:
            missing.append(name)
            continue
        selected[name] = on_disk[name]
        direction, key = mate_of(name)
        if direction is not None:
            mate = key.replace("_R#", "_R2" if direction == "1" else "_R1", 1)
            if mate in on_disk:
                selected[mate] = on_disk[mate]
    if missing:
        log.warning(
            "%d file(s) listed in metadata were not found under %s: %s",
            len(missing), raw_dir, summarise_examples(missing),
        )
    return sorted(selected.values())


def write_run_manifest(*, group: RunGroup, out_path: Path) -> None:
    """Write a per-run TSV manifest of read units.

    Args:
        group: The run whose units are written.
        out_path: Destination TSV path.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as fh:
        fh.write("sample-id\tforward-absolute-filepath\treverse-absolute-filepath\n")
        for unit in group.units:
            rev = str(unit.reverse.resolve()) if unit.reverse is not None else ""
            fh.write(f"{unit.name}\t{unit.forward.resolve()}\t{rev}\n")


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line argument parser for this utility."""
    p = argparse.ArgumentParser(
        description="Partition raw FASTQs by sequencing run and write one manifest per run.",
        allow_abbrev=False,
    )
    p.add_argument("--reads-dir", required=True, type=Path,
                   help="Directory containing FASTQs (scanned recursively).")
    p.add_argument("--out-dir", required=True, type=Path,
                   help="Directory receiving <run>_manifest.tsv files.")
    p.add_argument("--run-pattern", default=DEFAULT_RUN_PATTERN, type=str,
                   help=f"Regex with one capture group for the run ID (default: '{DEFAULT_RUN_PATTERN}').")
    p.add_argument("--single-end", action="store_true",
                   help="Do not require R1/R2 mates.")
    return p


def main() -> None:
    """Entry point: partition files and write per-run manifests."""
    args = build_parser().parse_args()
    try:
        fastqs = find_fastqs(reads_dir=args.reads_dir)
        if not fastqs:
            raise PipelineError(f"No FASTQs found under: {args.reads_dir}")
        result = partition_runs(fastqs, run_pattern=args.run_pattern, paired=not args.single_end)
        if not result.groups:
            raise PipelineError("No sequencing runs could be formed from the input files.")
        for group in result.groups:
            out = args.out_dir / f"{group.run_id}_manifest.tsv"
            write_run_manifest(group=group, out_path=out)
            print(f"[INFO] {group.run_id}: {len(group.units)} unit(s) -> {out}", flush=True)
    except PipelineError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
