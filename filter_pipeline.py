#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stage-by-stage read filtering for one sequencing run.

Overview
--------
A pipeline is an ordered list of stages. Each stage reads the files of the
surviving read units from an input directory, writes its filtered files to
its own output directory under the *same* filenames, and reports how many
reads survived per unit. Stage k's output directory is stage k+1's input
directory. A unit with zero survivors is not handed to later stages; its
later tracking columns are 0.

Stages shipped here:
  - PrimerTrimStage     cutadapt primer removal (external binary)
  - QualityFilterStage  truncation / expected-error filtering (Biopython)
  - DenoiseStage        external denoiser command (run-level, black box)

Design choices
--------------
- Paired and single-end reads share one pipeline; the ``ReadMode`` decides
  how many files make up a unit and which tracking columns the denoiser
  reports.
- Stage parameters are opaque mappings handed to the stage untouched.
- A unit that raises inside a stage is recorded with 0 survivors and a
  reason; the rest of the run carries on.

UK English spelling is used throughout documentation strings.
"""

from __future__ import annotations

import gzip
import json
import os
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
from Bio.Seq import reverse_complement
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from amplicon_common import ConfigError, StageError, get_logger, run_cmd, summarise_examples
from run_partition import ReadUnit, RunGroup
from sample_ids import DEFAULT_RULES, ReconciliationRule, canonical_id, make_unique
from seqtab_merge import read_seqtab
from stage_tracker import PAIRED_STAGES, SAMPLE_KEY, SINGLE_STAGES, StageTracker, check_monotonic

log = get_logger("filter_pipeline")

INPUT_COLUMN = "input"


class ReadMode(str, Enum):
    """How many files make up one read unit."""

    PAIRED = "paired"
    SINGLE = "single"

    @property
    def stage_order(self) -> Tuple[str, ...]:
        return PAIRED_STAGES if self is ReadMode.PAIRED else SINGLE_STAGES


# ----------------------------- FASTQ helpers ----------------------------- #

def open_fastq(path: Path, mode: str = "rt") -> IO[str]:
    """Open a FASTQ for text I/O, transparently handling ``.gz``."""
    if path.name.endswith(".gz"):
        return gzip.open(path, mode, encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def count_fastq_records(path: Path) -> int:
    """Number of records in a (possibly gzipped) FASTQ file."""
    with open_fastq(path) as fh:
        return sum(1 for _ in FastqGeneralIterator(fh))


def expected_errors(qual: str, offset: int = 33) -> float:
    """Sum of per-base error probabilities for a Phred quality string."""
    return sum(10 ** (-(ord(c) - offset) / 10.0) for c in qual)


def safe_symlink(src: Path, dest: Path) -> None:
    """Create or replace a symlink from ``dest`` to ``src``."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.exists() or dest.is_symlink():
        dest.unlink()
    os.symlink(src, dest)


def _side(value: Any, idx: int) -> Any:
    """Pick the forward (0) or reverse (1) value of an asymmetric parameter."""
    if isinstance(value, (list, tuple)):
        return value[idx] if idx < len(value) else value[-1]
    return value


# ----------------------------- stage contract ----------------------------- #

@dataclass
class StageResult:
    """What a stage hands back to the pipeline.

    Attributes
    ----------
    counts : dict
        ``tracking column -> {unit name: survivors}``. Every unit given to
        the stage appears under every column the stage reports.
    failures : dict
        ``unit name -> reason`` for units the stage could not process.
    artifact : Path, optional
        Secondary output (the denoiser's sequence table).
    """

    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    artifact: Optional[Path] = None


class Stage:
    """Base class for a pipeline stage.

    Subclasses set ``name`` (also the key of their parameter block),
    ``columns`` (tracking columns they report, in order) and
    ``read_modes`` (modes they support), and implement :meth:`run`.
    """

    name = "stage"
    columns: Tuple[str, ...] = ()
    read_modes: Tuple[ReadMode, ...] = (ReadMode.PAIRED, ReadMode.SINGLE)

    def run(
        self,
        units: Sequence[ReadUnit],
        input_dir: Path,
        output_dir: Path,
        params: Mapping[str, Any],
    ) -> StageResult:
        raise NotImplementedError


class FileStage(Stage):
    """A stage that treats every read unit independently.

    ``params['threads']`` (default 1) sets the number of worker threads.
    """

    def process_unit(self, unit: ReadUnit, output_dir: Path, params: Mapping[str, Any]) -> int:
        """Filter one unit into ``output_dir``; return surviving reads."""
        raise NotImplementedError

    def _safe_process(
        self, unit: ReadUnit, output_dir: Path, params: Mapping[str, Any]
    ) -> Tuple[int, Optional[str]]:
        try:
            n = int(self.process_unit(unit, output_dir, params))
        except Exception as exc:  # noqa: BLE001
            for f in unit.files:
                (output_dir / f.name).unlink(missing_ok=True)
            return 0, f"{type(exc).__name__}: {exc}"
        if n == 0:
            for f in unit.files:
                (output_dir / f.name).unlink(missing_ok=True)
        return n, None

    def run(
        self,
        units: Sequence[ReadUnit],
        input_dir: Path,
        output_dir: Path,
        params: Mapping[str, Any],
    ) -> StageResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        threads = max(1, int(params.get("threads", 1)))
        if threads > 1 and len(units) > 1:
            with ThreadPoolExecutor(max_workers=threads) as pool:
                outcomes = list(pool.map(lambda u: self._safe_process(u, output_dir, params), units))
        else:
            outcomes = [self._safe_process(u, output_dir, params) for u in units]

        column = self.columns[-1]
        result = StageResult(counts={column: {}})
        for unit, (n, reason) in zip(units, outcomes):
            result.counts[column][unit.name] = n
            if reason is not None:
                result.failures[unit.name] = reason
        return result


# ----------------------------- primer trimming ----------------------------- #

class PrimerTrimStage(FileStage):
    """Remove primers with cutadapt.

    Parameters (``params``)
    -----------------------
    primer_f, primer_r : str
        Forward/reverse primer sequences (IUPAC allowed).
    discard_untrimmed : bool
        Drop reads in which the 5' primer was not found (default True).
    read_through : bool
        Also trim the reverse-complemented opposite primer at the 3' end,
        needed when amplicons are shorter than the read (ITS).
    min_length : int
        Discard reads shorter than this after trimming (default 1).
    cutadapt : str
        Executable name/path (default 'cutadapt').
    log_dir : Path
        Where per-unit cutadapt logs go (default: the output directory).
    """

    name = "trim"
    columns = ("trimmed",)

    def build_command(self, unit: ReadUnit, output_dir: Path, params: Mapping[str, Any]) -> List[str]:
        primer_f = params.get("primer_f")
        primer_r = params.get("primer_r")
        if not primer_f or (unit.paired and not primer_r):
            raise StageError("Primer sequences missing for cutadapt.")

        cmd = [str(params.get("cutadapt", "cutadapt")), "-g", primer_f]
        if unit.paired:
            cmd += ["-G", primer_r]
        if params.get("read_through", False) and primer_r:
            cmd += ["-a", reverse_complement(primer_r)]
            if unit.paired:
                cmd += ["-A", reverse_complement(primer_f)]
        if params.get("discard_untrimmed", True):
            cmd.append("--discard-untrimmed")
        cmd += ["-m", str(params.get("min_length", 1))]
        cmd += ["-o", str(output_dir / unit.forward.name)]
        if unit.paired:
            cmd += ["-p", str(output_dir / unit.reverse.name)]
        cmd += [str(f) for f in unit.files]
        return cmd

    def process_unit(self, unit: ReadUnit, output_dir: Path, params: Mapping[str, Any]) -> int:
        log_dir = Path(params.get("log_dir", output_dir))
        cmd = self.build_command(unit, output_dir, params)
        try:
            run_cmd(cmd=cmd, log_file=log_dir / f"trim_{unit.name}.log", logger=log)
        except subprocess.CalledProcessError as exc:
            raise StageError(f"cutadapt exited with status {exc.returncode}") from exc
        out = output_dir / unit.forward.name
        if not out.exists():
            raise StageError(f"cutadapt produced no output for {unit.name}")
        return count_fastq_records(out)


# ----------------------------- quality filtering ----------------------------- #

def filter_read(
    seq: str,
    qual: str,
    *,
    trunc_len: int = 0,
    trunc_q: int = 2,
    max_ee: float = float("inf"),
    max_n: int = 0,
    min_len: int = 20,
    trim_left: int = 0,
) -> Optional[Tuple[str, str]]:
    """Apply truncation and expected-error filters to one read.

    Steps run in this order: truncate at the first base with quality
    ``<= trunc_q``; if ``trunc_len`` > 0 drop reads shorter than it and
    truncate to it; remove ``trim_left`` bases; drop reads with more than
    ``max_n`` N bases, fewer than ``min_len`` bases or more than ``max_ee``
    expected errors.

    Returns:
        ``(seq, qual)`` of the surviving read, or ``None`` if filtered out.
    """
    if trunc_q is not None and trunc_q >= 0:
        for i, c in enumerate(qual):
            if ord(c) - 33 <= trunc_q:
                seq, qual = seq[:i], qual[:i]
                break
    if trunc_len:
        if len(seq) < trunc_len:
            return None
        seq, qual = seq[:trunc_len], qual[:trunc_len]
    if trim_left:
        seq, qual = seq[trim_left:], qual[trim_left:]
    if len(seq) < max(1, min_len):
        return None
    if seq.upper().count("N") > max_n:
        return None
    if expected_errors(qual) > max_ee:
        return None
    return seq, qual


class QualityFilterStage(FileStage):
    """Truncate and filter reads by expected errors.

    Any parameter may be a scalar or a ``(forward, reverse)`` pair. In paired
    mode a read pair survives only when both mates pass; mate order is kept.

    Parameters (``params``)
    -----------------------
    trunc_len, trunc_q, max_ee, max_n, min_len, trim_left
        See :func:`filter_read`.
    """

    name = "filter"
    columns = ("filtered",)

    _KEYS = ("trunc_len", "trunc_q", "max_ee", "max_n", "min_len", "trim_left")

    def _side_params(self, params: Mapping[str, Any], idx: int) -> Dict[str, Any]:
        return {k: _side(params[k], idx) for k in self._KEYS if k in params}

    def process_unit(self, unit: ReadUnit, output_dir: Path, params: Mapping[str, Any]) -> int:
        fwd_params = self._side_params(params, 0)
        out_f = output_dir / unit.forward.name
        kept = 0
        if not unit.paired:
            with open_fastq(unit.forward) as fin, open_fastq(out_f, "wt") as fout:
                for title, seq, qual in FastqGeneralIterator(fin):
                    hit = filter_read(seq, qual, **fwd_params)
                    if hit is not None:
                        fout.write(f"@{title}\n{hit[0]}\n+\n{hit[1]}\n")
                        kept += 1
            return kept

        rev_params = self._side_params(params, 1)
        out_r = output_dir / unit.reverse.name
        with open_fastq(unit.forward) as f_in, open_fastq(unit.reverse) as r_in, \
                open_fastq(out_f, "wt") as f_out, open_fastq(out_r, "wt") as r_out:
            f_iter = FastqGeneralIterator(f_in)
            r_iter = FastqGeneralIterator(r_in)
            for f_rec, r_rec in _zip_mates(f_iter, r_iter, unit.name):
                hit_f = filter_read(f_rec[1], f_rec[2], **fwd_params)
                if hit_f is None:
                    continue
                hit_r = filter_read(r_rec[1], r_rec[2], **rev_params)
                if hit_r is None:
                    continue
                f_out.write(f"@{f_rec[0]}\n{hit_f[0]}\n+\n{hit_f[1]}\n")
                r_out.write(f"@{r_rec[0]}\n{hit_r[0]}\n+\n{hit_r[1]}\n")
                kept += 1
        return kept


def _zip_mates(
    f_iter: Iterator[Tuple[str, str, str]],
    r_iter: Iterator[Tuple[str, str, str]],
    name: str,
) -> Iterator[Tuple[Tuple[str, str, str], Tuple[str, str, str]]]:
    """Yield mate pairs, raising if the two files disagree in length."""
    sentinel = object()
    while True:
        f_rec = next(f_iter, sentinel)
        r_rec = next(r_iter, sentinel)
        if f_rec is sentinel and r_rec is sentinel:
            return
        if f_rec is sentinel or r_rec is sentinel:
            raise StageError(f"Forward and reverse files of {name} have different read counts.")
        yield f_rec, r_rec


# ----------------------------- denoising ----------------------------- #

class DenoiseStage(Stage):
    """Run an external denoiser on all units of one run at once.

    The denoiser (error learning, sample inference, pair merging, chimera
    removal) is a black box invoked as a command. ``params['command']`` is a
    token list in which ``{input_dir}``, ``{output_dir}``, ``{params_json}``
    and ``{threads}`` are substituted. ``params['options']`` is written to
    ``params_json`` together with the unit filenames. The command must write
    into ``output_dir``:

      - ``seqtab.tsv``  sample_id + one count column per sequence variant
      - ``track.tsv``   sample_id + the tracking columns of this stage

    with ``sample_id`` set to the unit name (the forward filename).
    """

    name = "denoise"

    def __init__(self, read_mode: ReadMode = ReadMode.PAIRED) -> None:
        self.read_mode = read_mode
        if read_mode is ReadMode.PAIRED:
            self.columns = ("denoised", "merged", "nonchim")
        else:
            self.columns = ("denoised", "nonchim")

    def _all_failed(self, units: Sequence[ReadUnit], reason: str) -> StageResult:
        result = StageResult(counts={c: {u.name: 0 for u in units} for c in self.columns})
        result.failures = {u.name: reason for u in units}
        return result

    def run(
        self,
        units: Sequence[ReadUnit],
        input_dir: Path,
        output_dir: Path,
        params: Mapping[str, Any],
    ) -> StageResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        template = params.get("command")
        if not template:
            raise ConfigError("Denoise stage needs a 'command' template.")

        params_json = output_dir / "denoise_params.json"
        params_json.write_text(
            json.dumps(
                {
                    "read_mode": self.read_mode.value,
                    "units": [[f.name for f in u.files] for u in units],
                    "options": dict(params.get("options", {})),
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        values = {
            "input_dir": str(input_dir),
            "output_dir": str(output_dir),
            "params_json": str(params_json),
            "threads": str(params.get("threads", 1)),
        }
        cmd = [str(tok).format(**values) for tok in template]
        log_dir = Path(params.get("log_dir", output_dir))
        try:
            run_cmd(cmd=cmd, log_file=log_dir / "denoise.log", logger=log)
        except (subprocess.CalledProcessError, OSError) as exc:
            log.error("Denoiser failed for %s: %s", input_dir, exc)
            return self._all_failed(units, f"denoiser failed: {exc}")

        seqtab_path = output_dir / "seqtab.tsv"
        track_path = output_dir / "track.tsv"
        if not seqtab_path.exists() or not track_path.exists():
            return self._all_failed(units, "denoiser wrote no seqtab.tsv/track.tsv")

        try:
            track = pd.read_csv(track_path, sep="\t", dtype={SAMPLE_KEY: str})
        except (OSError, ValueError) as exc:
            return self._all_failed(units, f"unreadable track.tsv: {exc}")
        missing_cols = [c for c in (SAMPLE_KEY,) + tuple(self.columns) if c not in track.columns]
        if missing_cols:
            return self._all_failed(units, f"denoiser track.tsv lacks columns {missing_cols}")

        dup = track.duplicated(subset=[SAMPLE_KEY], keep="first")
        if dup.any():
            log.warning(
                "Denoiser track.tsv repeats %d sample row(s); keeping the first: %s",
                int(dup.sum()), summarise_examples(track.loc[dup, SAMPLE_KEY].astype(str).tolist()),
            )
            track = track.loc[~dup]
        counts = track[list(self.columns)].apply(pd.to_numeric, errors="coerce")
        counts.index = track[SAMPLE_KEY].astype(str)
        bad_rows = counts.isna().any(axis=1)
        malformed = set(counts.index[bad_rows])
        counts.loc[bad_rows] = 0
        counts = counts.clip(lower=0).astype(int)

        result = StageResult(artifact=seqtab_path)
        for col in self.columns:
            result.counts[col] = {}
            for u in units:
                n = int(counts.at[u.name, col]) if u.name in counts.index else 0
                result.counts[col][u.name] = n
        for u in units:
            if u.name not in counts.index:
                result.failures[u.name] = "absent from denoiser output"
            elif u.name in malformed:
                result.failures[u.name] = "non-numeric counts in denoiser output"
        return result


# ----------------------------- pipeline ----------------------------- #

@dataclass
class PipelineResult:
    """Per-run output: tracking table, sequence table and failures."""

    run_id: str
    tracking: pd.DataFrame
    seqtab: Optional[pd.DataFrame]
    failures: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        if self.seqtab is None or self.seqtab.empty:
            return True
        counts = self.seqtab.drop(columns=[SAMPLE_KEY])
        return counts.shape[1] == 0 or int(counts.to_numpy().sum()) == 0


class FilterPipeline:
    """An ordered chain of stages applied to the units of one run.

    Args:
        stages: Stages in execution order.
        read_mode: Paired or single-end.
        rules: Identifier rules turning unit filenames into sample IDs.

    Raises:
        ConfigError: If a stage does not support the read mode, or the
            stages' tracking columns are not in canonical stage order.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        read_mode: ReadMode = ReadMode.PAIRED,
        rules: Sequence[ReconciliationRule] = DEFAULT_RULES,
    ) -> None:
        self.stages = list(stages)
        self.read_mode = read_mode
        self.rules = tuple(rules)
        self.stage_order = read_mode.stage_order
        self._validate()

    def _validate(self) -> None:
        if not self.stages:
            raise ConfigError("Filter pipeline has no stages.")
        names = [s.name for s in self.stages]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate stage names in pipeline: {names}")
        columns = [INPUT_COLUMN]
        for stage in self.stages:
            if self.read_mode not in stage.read_modes:
                raise ConfigError(f"Stage '{stage.name}' does not support {self.read_mode.value} reads.")
            if not stage.columns:
                raise ConfigError(f"Stage '{stage.name}' reports no tracking columns.")
            columns.extend(stage.columns)
        unknown = [c for c in columns if c not in self.stage_order]
        if unknown:
            raise ConfigError(f"Tracking columns {unknown} are not in stage order {list(self.stage_order)}")
        positions = [self.stage_order.index(c) for c in columns]
        if positions != sorted(positions) or len(set(positions)) != len(positions):
            raise ConfigError(
                f"Stages report columns {columns} out of canonical order {list(self.stage_order)}"
            )
        self.columns = columns

    def sample_labels(self, units: Sequence[ReadUnit]) -> Dict[str, str]:
        """Map unit names to unique sample IDs, in unit order."""
        labels = make_unique(canonical_id(u.name, self.rules) for u in units)
        return {u.name: lab for u, lab in zip(units, labels)}

    def _stage_raw(self, units: Sequence[ReadUnit], raw_dir: Path) -> List[ReadUnit]:
        """Symlink raw files into one directory so every stage sees one input dir."""
        raw_dir.mkdir(parents=True, exist_ok=True)
        for unit in units:
            for f in unit.files:
                safe_symlink(Path(f).resolve(), raw_dir / f.name)
        return [u.relocated(raw_dir) for u in units]

    def run(
        self,
        group: RunGroup,
        work_dir: Path,
        params: Mapping[str, Mapping[str, Any]],
    ) -> PipelineResult:
        """Carry one run's units through every stage.

        Args:
            group: The run's read units.
            work_dir: Run-specific directory; stage k writes to
                ``<work_dir>/<kk>_<stage name>``.
            params: ``stage name -> parameter mapping``; passed through.

        Returns:
            ``PipelineResult`` with tracking rows for every unit of the run.
        """
        units = self._stage_raw(group.units, work_dir / "00_raw")
        tracker = StageTracker(self.stage_order)
        failures: Dict[str, str] = {}

        input_counts: Dict[str, int] = {}
        for u in units:
            try:
                input_counts[u.name] = count_fastq_records(u.forward)
            except (OSError, ValueError) as exc:
                input_counts[u.name] = 0
                failures[u.name] = f"unreadable input: {exc}"
        tracker.add(INPUT_COLUMN, input_counts)

        current = [u for u in units if input_counts[u.name] > 0]
        in_dir = work_dir / "00_raw"
        artifact: Optional[Path] = None
        for k, stage in enumerate(self.stages, start=1):
            if not current:
                log.warning("%s: no reads left before stage '%s'.", group.run_id, stage.name)
                break
            out_dir = work_dir / f"{k:02d}_{stage.name}"
            if out_dir.exists():
                shutil.rmtree(out_dir)
            log.info("%s: stage '%s' on %d unit(s)", group.run_id, stage.name, len(current))
            stage_units = [u.relocated(in_dir) for u in current]
            result = stage.run(stage_units, in_dir, out_dir, params.get(stage.name, {}))

            for column in stage.columns:
                tracker.add(column, result.counts.get(column, {}))
            if result.failures:
                log.warning(
                    "%s: stage '%s' failed on %d unit(s): %s",
                    group.run_id, stage.name, len(result.failures),
                    summarise_examples(sorted(result.failures)),
                )
                for name, reason in result.failures.items():
                    failures.setdefault(name, f"{stage.name}: {reason}")
            if result.artifact is not None:
                artifact = result.artifact

            last = result.counts.get(stage.columns[-1], {})
            current = [u for u in current if last.get(u.name, 0) > 0]
            in_dir = out_dir

        labels = self.sample_labels(group.units)
        tracking = tracker.table()
        for col in self.columns:
            if col not in tracking.columns:
                tracking[col] = 0
        tracking = tracking[[SAMPLE_KEY] + self.columns].copy()
        tracking[SAMPLE_KEY] = tracking[SAMPLE_KEY].map(labels)
        check_monotonic(tracking, self.columns)

        seqtab: Optional[pd.DataFrame] = None
        if artifact is not None and artifact.exists():
            seqtab = read_seqtab(artifact)
            seqtab[SAMPLE_KEY] = seqtab[SAMPLE_KEY].map(lambda s: labels.get(s, s))

        return PipelineResult(
            run_id=group.run_id,
            tracking=tracking.reset_index(drop=True),
            seqtab=seqtab,
            failures=failures,
            labels=labels,
        )
