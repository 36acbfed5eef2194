#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Run configuration for the soil amplicon pipeline.

Everything a run needs is held in one frozen ``PipelineConfig`` built from
the command line and handed to each component; nothing is read from module
globals. ``validate()`` is called before any work starts and raises
``ConfigError`` for anything that would only fail later.

UK English spelling is used in docstrings.
"""

from __future__ import annotations

import argparse
import json
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from amplicon_common import ConfigError
from filter_pipeline import ReadMode
from metadata_join import JOIN_MODES
from run_partition import DEFAULT_RUN_PATTERN
from sample_ids import normalise_sample_id
from seqtab_merge import DUPLICATE_POLICIES, REPRESENTATIVE_POLICIES

# 16S V4 (515F-Y / 806R) and ITS1 (ITS1F / ITS2) primer pairs.
PRIMERS_16S = ("GTGYCAGCMGCCGCGGTAA", "GGACTACNVGGGTWTCTAAT")
PRIMERS_ITS = ("CTTGGTCATTTAGAGGAAGTAA", "GCTGCGTTCTTCATCGATGC")

GENE_REGIONS = ("16S", "ITS")


@dataclass(frozen=True)
class ParameterSet:
    """Filter-stage overrides for one arm of a sensitivity sweep."""

    overrides: Mapping[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        """``key=value,key=value``; pairs are written ``a/b``."""
        parts = []
        for key, value in self.overrides.items():
            if isinstance(value, (list, tuple)):
                value = "/".join(str(v) for v in value)
            parts.append(f"{key}={value}")
        return ",".join(parts)

    @property
    def dirname(self) -> str:
        """Filesystem-safe form of the label."""
        return normalise_sample_id(self.label) or "default"


@dataclass(frozen=True)
class PipelineConfig:
    """All knobs of one pipeline invocation.

    Attributes
    ----------
    reads_dir : Path
        Root of the raw FASTQ tree.
    out_dir : Path
        Output root (per-run subtrees, merged outputs, logs).
    metadata : Path, optional
        Sample metadata CSV/TSV.
    gene_region : str
        '16S' or 'ITS'; sets primer defaults.
    read_mode : ReadMode
        Paired or forward-only processing.
    """

    reads_dir: Path
    out_dir: Path
    run_label: str = "soil_amplicon"
    metadata: Optional[Path] = None
    gene_region: str = "16S"
    read_mode: ReadMode = ReadMode.PAIRED
    run_pattern: str = DEFAULT_RUN_PATTERN
    select_from_metadata: bool = False
    drop_flagged: bool = True

    # trimming
    primer_f: Optional[str] = None
    primer_r: Optional[str] = None
    discard_untrimmed: bool = True
    cutadapt: str = "cutadapt"

    # filtering
    trunc_len: Tuple[int, int] = (240, 200)
    max_ee: Tuple[float, float] = (2.0, 2.0)
    trunc_q: int = 2
    max_n: int = 0
    min_len: int = 50

    # denoising (external)
    denoise_command: Tuple[str, ...] = ()
    reference_db: Optional[Path] = None

    # merging / joining
    on_duplicate: str = "sum"
    collapse_variants: bool = False
    representative_policy: str = "longest"
    min_overlap: int = 20
    join_how: str = "left"

    # execution
    threads: int = 1
    run_workers: int = 1
    resume: bool = False
    parameter_sets: Tuple[ParameterSet, ...] = ()

    @property
    def primers(self) -> Tuple[str, str]:
        default = PRIMERS_16S if self.gene_region == "16S" else PRIMERS_ITS
        return (self.primer_f or default[0], self.primer_r or default[1])

    @property
    def sweep(self) -> bool:
        return bool(self.parameter_sets)

    def validate(self) -> None:
        """Fail fast on configuration that cannot work.

        Raises:
            ConfigError: Describing the first problem found.
        """
        if not self.reads_dir.is_dir():
            raise ConfigError(f"Reads directory not found: {self.reads_dir}")
        if self.metadata is not None and not self.metadata.is_file():
            raise ConfigError(f"Metadata file not found: {self.metadata}")
        if self.select_from_metadata and self.metadata is None:
            raise ConfigError("--select_from_metadata needs --metadata.")
        if self.gene_region not in GENE_REGIONS:
            raise ConfigError(f"gene_region must be one of {GENE_REGIONS}, got '{self.gene_region}'")
        if not self.denoise_command:
            raise ConfigError("A denoise command is required (--denoise_command).")
        if self.on_duplicate not in DUPLICATE_POLICIES:
            raise ConfigError(f"on_duplicate must be one of {DUPLICATE_POLICIES}")
        if self.representative_policy not in REPRESENTATIVE_POLICIES:
            raise ConfigError(f"representative_policy must be one of {REPRESENTATIVE_POLICIES}")
        if self.join_how not in JOIN_MODES:
            raise ConfigError(f"join_how must be one of {JOIN_MODES}")
        if self.threads < 1 or self.run_workers < 1:
            raise ConfigError("threads and run_workers must be >= 1")
        if self.min_overlap < 1:
            raise ConfigError("min_overlap must be >= 1")
        try:
            compiled = re.compile(self.run_pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid run pattern '{self.run_pattern}': {exc}") from exc
        if compiled.groups != 1:
            raise ConfigError(f"Run pattern must hold exactly one capture group: {self.run_pattern}")
        if self.reference_db is not None and not self.reference_db.exists():
            raise ConfigError(f"Reference database not found: {self.reference_db}")

    def stage_params(
        self,
        *,
        log_dir: Path,
        parameter_set: Optional[ParameterSet] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Parameter blocks keyed by stage name, ready for ``FilterPipeline.run``."""
        primer_f, primer_r = self.primers
        filter_params: Dict[str, Any] = {
            "trunc_len": list(self.trunc_len),
            "max_ee": list(self.max_ee),
            "trunc_q": self.trunc_q,
            "max_n": self.max_n,
            "min_len": self.min_len,
            "threads": self.threads,
        }
        if parameter_set is not None:
            filter_params.update(parameter_set.overrides)

        options: Dict[str, Any] = {"gene_region": self.gene_region}
        if self.reference_db is not None:
            options["reference_db"] = str(self.reference_db)

        return {
            "trim": {
                "primer_f": primer_f,
                "primer_r": primer_r,
                "discard_untrimmed": self.discard_untrimmed,
                "read_through": self.gene_region == "ITS",
                "cutadapt": self.cutadapt,
                "threads": self.threads,
                "log_dir": log_dir,
            },
            "filter": filter_params,
            "denoise": {
                "command": list(self.denoise_command),
                "threads": self.threads,
                "options": options,
                "log_dir": log_dir,
            },
        }

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "PipelineConfig":
        """Build a config from parsed command-line arguments."""
        read_mode = ReadMode(args.read_mode) if args.read_mode else (
            ReadMode.SINGLE if args.gene_region == "ITS" else ReadMode.PAIRED
        )
        cfg = cls(
            reads_dir=Path(args.reads_dir).expanduser().resolve(),
            out_dir=Path(args.out_dir).expanduser().resolve(),
            run_label=args.run_label,
            metadata=Path(args.metadata).expanduser().resolve() if args.metadata else None,
            gene_region=args.gene_region,
            read_mode=read_mode,
            run_pattern=args.run_pattern,
            select_from_metadata=bool(args.select_from_metadata),
            drop_flagged=bool(args.drop_flagged),
            primer_f=args.primer_f,
            primer_r=args.primer_r,
            discard_untrimmed=bool(args.discard_untrimmed),
            cutadapt=args.cutadapt,
            trunc_len=parse_pair(args.trunc_len, int),
            max_ee=parse_pair(args.max_ee, float),
            trunc_q=args.trunc_q,
            max_n=args.max_n,
            min_len=args.min_len,
            denoise_command=tuple(args.denoise_command.split()) if args.denoise_command else (),
            reference_db=Path(args.reference_db).expanduser().resolve() if args.reference_db else None,
            on_duplicate=args.on_duplicate,
            collapse_variants=bool(args.collapse_variants),
            representative_policy=args.representative_policy,
            min_overlap=args.min_overlap,
            join_how=args.join_how,
            threads=args.threads,
            run_workers=args.run_workers,
            resume=bool(args.resume),
        )
        if args.param_sweep:
            cfg = replace(cfg, parameter_sets=load_parameter_sets(Path(args.param_sweep)))
        return cfg


def parse_pair(text: str, cast) -> Tuple[Any, Any]:
    """Parse 'F,R' (or a single value used for both) into a pair."""
    parts = [p for p in str(text).replace(":", ",").split(",") if p.strip()]
    try:
        values = [cast(p.strip()) for p in parts]
    except ValueError as exc:
        raise ConfigError(f"Cannot parse '{text}' as a forward,reverse pair") from exc
    if len(values) == 1:
        return values[0], values[0]
    if len(values) != 2:
        raise ConfigError(f"Expected one or two values, got '{text}'")
    return values[0], values[1]


def load_parameter_sets(path: Path) -> Tuple[ParameterSet, ...]:
    """Read a JSON list of filter-parameter overrides.

    Example file::

        [{"trunc_len": [240, 200], "max_ee": [2, 2]},
         {"trunc_len": [250, 220], "max_ee": [4, 4]}]
    """
    if not path.is_file():
        raise ConfigError(f"Parameter sweep file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Parameter sweep file is not valid JSON: {exc}") from exc
    if not isinstance(raw, list) or not all(isinstance(x, dict) for x in raw):
        raise ConfigError("Parameter sweep file must hold a list of objects.")
    sets = tuple(ParameterSet(overrides=dict(x)) for x in raw)
    labels: List[str] = [s.label for s in sets]
    if len(set(labels)) != len(labels):
        raise ConfigError("Parameter sweep has duplicate parameter sets.")
    return sets
