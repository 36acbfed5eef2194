#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Per-sample read survival across pipeline stages.

Each stage of a run contributes one partial table (sample -> surviving
reads). The tracker joins the partials on ``sample_id`` into one table whose
columns follow the pipeline's stage order, regardless of the order in which
stages were added. Samples that vanish at a stage (the file produced no
output) carry an explicit 0 from that stage onwards.

UK English spelling is used in docstrings.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Sequence

import pandas as pd

from amplicon_common import ConfigError, get_logger, summarise_examples

log = get_logger("stage_tracker")

SAMPLE_KEY = "sample_id"
RUN_KEY = "run_id"
PARAM_SET_KEY = "param_set"

PAIRED_STAGES = ("input", "trimmed", "filtered", "denoised", "merged", "nonchim")
SINGLE_STAGES = ("input", "trimmed", "filtered", "denoised", "nonchim")


class StageTracker:
    """Accumulate survivor counts for an ordered set of named stages.

    Args:
        stage_order: Canonical stage names, first stage first.
    """

    def __init__(self, stage_order: Sequence[str] = PAIRED_STAGES) -> None:
        if len(set(stage_order)) != len(stage_order):
            raise ConfigError(f"Duplicate stage names in stage order: {list(stage_order)}")
        if SAMPLE_KEY in stage_order:
            raise ConfigError(f"'{SAMPLE_KEY}' cannot be used as a stage name.")
        self.stage_order = tuple(stage_order)
        self._partials: Dict[str, Dict[str, int]] = {}

    def add(self, stage: str, counts: Mapping[str, int]) -> None:
        """Record one stage's survivor counts (sample -> reads)."""
        if stage not in self.stage_order:
            raise ConfigError(
                f"Unknown stage '{stage}'; expected one of {list(self.stage_order)}"
            )
        bucket = self._partials.setdefault(stage, {})
        for sample, n in counts.items():
            bucket[str(sample)] = int(n)

    def table(self) -> pd.DataFrame:
        """Return the tracking table for everything added so far."""
        return self.combine(self._partials)

    def combine(self, partials: Mapping[str, Mapping[str, int]]) -> pd.DataFrame:
        """Outer-join per-stage partial tables into one tracking table.

        Args:
            partials: ``stage name -> {sample_id: survivors}``. Stages may be
                given in any order; stages not given are omitted.

        Returns:
            DataFrame with ``sample_id`` followed by one integer column per
            stage in canonical order. Rows appear in first-seen order walking
            the stages in canonical order; missing entries are 0.

        Raises:
            ConfigError: If a stage name is not part of the stage order.
        """
        unknown = [s for s in partials if s not in self.stage_order]
        if unknown:
            raise ConfigError(
                f"Unknown stage(s) {unknown}; expected names from {list(self.stage_order)}"
            )
        stages = [s for s in self.stage_order if s in partials]

        # Outer join on sample_id, keys kept in first-seen order.
        samples: Dict[str, None] = {}
        for stage in stages:
            for sample in partials[stage]:
                samples.setdefault(str(sample), None)

        merged = pd.DataFrame({SAMPLE_KEY: list(samples)})
        for stage in stages:
            counts = {str(k): int(v) for k, v in partials[stage].items()}
            merged[stage] = merged[SAMPLE_KEY].map(counts).fillna(0).astype(int)
        return merged


def non_monotonic_rows(table: pd.DataFrame, stage_order: Sequence[str]) -> List[str]:
    """Return sample IDs whose counts increase somewhere along the stage order."""
    stages = [s for s in stage_order if s in table.columns]
    if len(stages) < 2:
        return []
    values = table[stages].to_numpy()
    bad = (values[:, 1:] > values[:, :-1]).any(axis=1)
    return table.loc[bad, SAMPLE_KEY].astype(str).tolist()


def check_monotonic(table: pd.DataFrame, stage_order: Sequence[str]) -> bool:
    """Log a warning listing rows that gain reads between stages."""
    bad = non_monotonic_rows(table, stage_order)
    if bad:
        log.warning(
            "%d sample(s) gain reads between stages: %s",
            len(bad), summarise_examples(bad),
        )
    return not bad


def parse_param_label(label: str) -> Dict[str, str]:
    """Parse ``key=value,key=value`` into a dict (order kept)."""
    params: Dict[str, str] = {}
    for token in filter(None, (t.strip() for t in label.split(","))):
        key, _, value = token.partition("=")
        params[key.strip()] = value.strip()
    return params


def label_parameter_sets(table: pd.DataFrame, separator: str = "|") -> pd.DataFrame:
    """Decorate a tracking table produced under a parameter sweep.

    Sample IDs of the form ``maxEE=2,truncLen=220|BMI_Plate37WellA12`` are
    split into a ``param_set`` column holding the prefix, one column per
    parameter, and a bare ``sample_id``. Rows without a prefix get an empty
    ``param_set``. Row order and counts are untouched.

    Args:
        table: Tracking table with a ``sample_id`` column.
        separator: Separator between the parameter prefix and the sample ID.

    Returns:
        A new DataFrame with ``param_set`` and parameter columns placed after
        ``sample_id``.
    """
    out = table.copy()
    split = out[SAMPLE_KEY].astype(str).str.partition(separator)
    has_prefix = split[1] == separator
    out[PARAM_SET_KEY] = split[0].where(has_prefix, "")
    out[SAMPLE_KEY] = split[2].where(has_prefix, split[0])

    parsed = [parse_param_label(p) for p in out[PARAM_SET_KEY]]
    param_cols: List[str] = []
    for params in parsed:
        for key in params:
            if key not in param_cols:
                param_cols.append(key)
    for key in param_cols:
        out[key] = [p.get(key) for p in parsed]

    lead = [SAMPLE_KEY, PARAM_SET_KEY] + param_cols
    rest = [c for c in out.columns if c not in lead]
    return out[lead + rest]


def combine_tracking_tables(tables: Mapping[str, pd.DataFrame],
                            stage_order: Sequence[str]) -> pd.DataFrame:
    """Stack per-run tracking tables with a leading ``run_id`` column.

    Runs missing a stage column (e.g. a run that failed before denoising)
    get zeros for it.
    """
    frames: List[pd.DataFrame] = []
    for run_id, tab in tables.items():
        t = tab.copy()
        for stage in stage_order:
            if stage not in t.columns:
                t[stage] = 0
        t.insert(0, RUN_KEY, run_id)
        frames.append(t[[RUN_KEY, SAMPLE_KEY] + list(stage_order)])
    if not frames:
        return pd.DataFrame(columns=[RUN_KEY, SAMPLE_KEY] + list(stage_order))
    return pd.concat(frames, ignore_index=True)


def survival_summary(table: pd.DataFrame, stage_order: Sequence[str]) -> pd.DataFrame:
    """Per-stage totals and the fraction of input reads retained."""
    stages = [s for s in stage_order if s in table.columns]
    totals = [int(table[s].sum()) for s in stages]
    first = totals[0] if totals else 0
    return pd.DataFrame(
        {
            "stage": stages,
            "reads": totals,
            "frac_retained": [(t / first) if first else 0.0 for t in totals],
            "samples_nonzero": [int((table[s] > 0).sum()) for s in stages],
        }
    )


def write_tracking(table: pd.DataFrame, path: Path) -> Path:
    """Write a tracking table as CSV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, index=False)
    return path


def read_tracking(path: Path) -> pd.DataFrame:
    """Read a tracking table written by :func:`write_tracking`."""
    return pd.read_csv(path, dtype={SAMPLE_KEY: str, RUN_KEY: str})


