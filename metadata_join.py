#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sample metadata: schema validation, de-duplication and the join onto the
abundance table.

The observatory's metadata arrives as one CSV/TSV row per sequenced DNA
extract, with soil-environment covariates alongside. Column names are
spelled out in ``MetadataSchema`` and checked when the file is loaded so a
missing field fails at once instead of surfacing as blanks after the join.

UK English spelling is used in docstrings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

import pandas as pd

from amplicon_common import ConfigError, MetadataSchemaError, PipelineError, get_logger, summarise_examples
from sample_ids import canonical_id
from stage_tracker import SAMPLE_KEY

log = get_logger("metadata_join")

JOIN_MODES = ("inner", "left")


@dataclass(frozen=True)
class MetadataSchema:
    """Column names of the sample metadata table.

    The required fields identify the record; ``numeric_columns`` are coerced
    to numbers when present and ``date_column`` is parsed to datetimes.
    """

    file_column: str = "rawDataFileName"
    sample_column: str = "dnaSampleID"
    lab_id_column: str = "internalLabID"
    run_column: str = "sequencerRunID"
    date_column: str = "collectDate"
    site_column: str = "siteID"
    plot_column: str = "plotID"
    flag_column: str = "qaqcStatus"
    numeric_columns: Tuple[str, ...] = (
        "soilTemp",
        "soilInWaterpH",
        "soilInCaClpH",
        "sampleTopDepth",
        "sampleBottomDepth",
        "soilMoisture",
    )

    @property
    def required(self) -> Tuple[str, ...]:
        return (
            self.file_column,
            self.sample_column,
            self.lab_id_column,
            self.run_column,
            self.date_column,
            self.site_column,
            self.plot_column,
            self.flag_column,
        )


def load_metadata(path: Path, schema: MetadataSchema = MetadataSchema()) -> pd.DataFrame:
    """Read and validate a metadata table.

    Args:
        path: CSV, or TSV when the suffix is ``.tsv``/``.txt``.
        schema: Expected column names.

    Returns:
        DataFrame with identifier columns stripped of whitespace, the date
        column parsed and numeric covariates coerced.

    Raises:
        MetadataSchemaError: If the file is missing or lacks required columns.
    """
    if not path.exists():
        raise MetadataSchemaError(f"Metadata not found: {path}")
    sep = "\t" if path.suffix.lower() in {".tsv", ".txt"} else ","
    md = pd.read_csv(path, sep=sep, dtype=str)
    md.columns = [c.strip() for c in md.columns]

    missing = [c for c in schema.required if c not in md.columns]
    if missing:
        raise MetadataSchemaError(
            f"Metadata {path.name} lacks required column(s): {', '.join(missing)}. "
            f"Columns present: {', '.join(md.columns)}"
        )

    for col in schema.required:
        md[col] = md[col].str.strip()
    blank = md[schema.sample_column].isna() | (md[schema.sample_column] == "")
    if blank.any():
        log.warning("Dropping %d metadata row(s) with no %s.", int(blank.sum()), schema.sample_column)
        md = md.loc[~blank].reset_index(drop=True)

    dates = pd.to_datetime(md[schema.date_column], errors="coerce")
    bad_dates = dates.isna() & md[schema.date_column].notna()
    if bad_dates.any():
        log.warning(
            "%d %s value(s) could not be parsed as dates: %s",
            int(bad_dates.sum()), schema.date_column,
            summarise_examples(md.loc[bad_dates, schema.date_column].tolist()),
        )
    md[schema.date_column] = dates

    for col in schema.numeric_columns:
        if col in md.columns:
            md[col] = pd.to_numeric(md[col], errors="coerce")
    return md


def filter_quality_flag(
    md: pd.DataFrame,
    schema: MetadataSchema = MetadataSchema(),
    bad_values: Iterable[str] = ("fail", "failed"),
) -> pd.DataFrame:
    """Drop records whose quality flag is one of ``bad_values`` (case-insensitive)."""
    bad = {v.lower() for v in bad_values}
    flags = md[schema.flag_column].fillna("").str.lower()
    mask = flags.isin(bad)
    if mask.any():
        log.warning(
            "Dropping %d metadata record(s) flagged %s: %s",
            int(mask.sum()), sorted(bad),
            summarise_examples(md.loc[mask, schema.sample_column].astype(str).tolist()),
        )
    return md.loc[~mask].reset_index(drop=True)


def deduplicate(md: pd.DataFrame, key: str) -> pd.DataFrame:
    """Keep the first row per ``key`` value, preserving row order."""
    dup = md.duplicated(subset=[key], keep="first")
    if dup.any():
        log.info("Dropped %d duplicate metadata row(s) on %s (first kept).", int(dup.sum()), key)
    return md.loc[~dup].reset_index(drop=True)


def id_map_from_metadata(md: pd.DataFrame, schema: MetadataSchema = MetadataSchema()) -> Dict[str, str]:
    """Map raw filenames and internal lab IDs to external sample IDs.

    Both surface forms are keys, so the resolver can work from whichever
    one a table's row labels were derived from.
    """
    mapping: Dict[str, str] = {}
    for col in (schema.lab_id_column, schema.file_column):
        for key, sid in zip(md[col], md[schema.sample_column]):
            if isinstance(key, str) and key and isinstance(sid, str) and sid:
                mapping.setdefault(key, sid)
    return mapping


def origins_from_metadata(
    md: pd.DataFrame,
    schema: MetadataSchema = MetadataSchema(),
    run_prefix: str = "run",
) -> Dict[str, Dict[str, str]]:
    """Per-run map of canonical row labels to external sample IDs.

    Keys are run IDs as they appear in raw filenames (``run`` + sequencer run
    ID). Used by the merger to tell one sample split over runs from two
    samples sharing a label.
    """
    origins: Dict[str, Dict[str, str]] = {}
    for row in md[[schema.run_column, schema.file_column, schema.sample_column]].itertuples(index=False):
        run, raw, sid = row
        if not isinstance(run, str) or not isinstance(raw, str):
            continue
        run_key = run if run.startswith(run_prefix) else f"{run_prefix}{run}"
        origins.setdefault(run_key, {}).setdefault(canonical_id(raw), sid)
    return origins


@dataclass
class JoinReport:
    """Non-fatal join diagnostics."""

    unmatched: List[str] = field(default_factory=list)
    unused: List[str] = field(default_factory=list)

    @property
    def n_unmatched(self) -> int:
        return len(self.unmatched)

    @property
    def n_unused(self) -> int:
        return len(self.unused)


@dataclass
class JoinResult:
    """Abundance table and the row-aligned sample table.

    ``samples[sample_id]`` equals ``abundance[sample_id]`` row for row.
    """

    abundance: pd.DataFrame
    samples: pd.DataFrame
    report: JoinReport


def join_metadata(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    on: str,
    how: str = "left",
) -> JoinResult:
    """Attach metadata to every sample of an abundance table.

    Metadata is reduced to its first row per ``on`` value before the join.
    With ``how='left'`` every abundance row is kept (unmatched rows get empty
    metadata); with ``how='inner'`` unmatched rows are dropped from both
    outputs. Abundance row order is preserved either way.

    Args:
        abundance: Sequence table keyed by ``sample_id``.
        metadata: Metadata table.
        on: Metadata column holding the canonical sample identifier.
        how: 'left' or 'inner'.

    Returns:
        A ``JoinResult``.

    Raises:
        ConfigError: If ``how`` is unknown or ``on`` is not a metadata column.
    """
    if how not in JOIN_MODES:
        raise ConfigError(f"how must be one of {JOIN_MODES}, got '{how}'")
    if on not in metadata.columns:
        raise ConfigError(f"Join column '{on}' not in metadata columns: {', '.join(metadata.columns)}")

    md = deduplicate(metadata, on)
    if on != SAMPLE_KEY:
        if SAMPLE_KEY in md.columns:
            md = md.rename(columns={SAMPLE_KEY: f"{SAMPLE_KEY}_metadata"})
        md = md.rename(columns={on: SAMPLE_KEY})
    md[SAMPLE_KEY] = md[SAMPLE_KEY].astype(str)

    keys = abundance[SAMPLE_KEY].astype(str)
    md_keys = set(md[SAMPLE_KEY])
    matched = keys.isin(md_keys)

    report = JoinReport(
        unmatched=keys[~matched].tolist(),
        unused=[k for k in md[SAMPLE_KEY] if k not in set(keys)],
    )
    if report.unmatched:
        log.warning(
            "%d sample(s) in the abundance table have no metadata: %s",
            report.n_unmatched, summarise_examples(report.unmatched),
        )
    if report.unused:
        log.info(
            "%d metadata record(s) matched no sample: %s",
            report.n_unused, summarise_examples(report.unused),
        )

    table = abundance if how == "left" else abundance.loc[matched.to_numpy()]
    table = table.reset_index(drop=True)
    samples = table[[SAMPLE_KEY]].astype(str).merge(md, on=SAMPLE_KEY, how="left")

    if samples[SAMPLE_KEY].tolist() != table[SAMPLE_KEY].astype(str).tolist():
        raise PipelineError("Joined sample table is not aligned with the abundance table.")
    return JoinResult(abundance=table, samples=samples, report=report)
