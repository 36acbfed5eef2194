#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sequence tables: merging across runs and collapsing length variants.

A sequence table is a DataFrame with a ``sample_id`` column followed by one
integer column per sequence variant, named by the sequence itself. Each run
yields one table; this module unions them into a single sample x variant
table and, on request, folds together variants that differ only by
leading/trailing length.

UK English spelling is used in docstrings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from Bio.Seq import Seq
from Bio.SeqIO import write as write_fasta
from Bio.SeqRecord import SeqRecord

from amplicon_common import ConfigError, get_logger, summarise_examples
from sample_ids import make_unique
from stage_tracker import SAMPLE_KEY

log = get_logger("seqtab_merge")

DUPLICATE_POLICIES = ("sum", "keep")
REPRESENTATIVE_POLICIES = ("longest", "abundant")


# ----------------------------- I/O ----------------------------- #

def variant_columns(table: pd.DataFrame) -> List[str]:
    """Sequence-variant columns of a table (everything but ``sample_id``)."""
    return [c for c in table.columns if c != SAMPLE_KEY]


def read_seqtab(path: Path) -> pd.DataFrame:
    """Read a TSV sequence table (``sample_id`` + one column per variant)."""
    df = pd.read_csv(path, sep="\t", dtype={SAMPLE_KEY: str})
    if SAMPLE_KEY not in df.columns:
        raise ValueError(f"Sequence table {path} has no '{SAMPLE_KEY}' column.")
    seqs = variant_columns(df)
    if seqs:
        df[seqs] = df[seqs].fillna(0).astype(int)
    return df


def write_seqtab(table: pd.DataFrame, path: Path) -> Path:
    """Write a sequence table as TSV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep="\t", index=False)
    return path


def total_reads(table: pd.DataFrame) -> int:
    """Sum of all counts in a sequence table."""
    seqs = variant_columns(table)
    return int(table[seqs].to_numpy().sum()) if seqs else 0


def remove_empty(table: pd.DataFrame) -> pd.DataFrame:
    """Drop samples and variants whose counts are all zero."""
    seqs = variant_columns(table)
    counts = table[seqs]
    keep_cols = [c for c in seqs if counts[c].sum() > 0]
    keep_rows = counts[keep_cols].sum(axis=1) > 0
    return table.loc[keep_rows, [SAMPLE_KEY] + keep_cols].reset_index(drop=True)


def variant_fasta(table: pd.DataFrame, path: Path, prefix: str = "ASV") -> Dict[str, str]:
    """Write the table's variants to FASTA with short IDs (``ASV1``, ...).

    Returns:
        Mapping of short ID to sequence, in column order.
    """
    ids: Dict[str, str] = {}
    records = []
    for i, seq in enumerate(variant_columns(table), start=1):
        asv_id = f"{prefix}{i}"
        ids[asv_id] = seq
        records.append(SeqRecord(Seq(seq), id=asv_id, description=""))
    path.parent.mkdir(parents=True, exist_ok=True)
    write_fasta(records, str(path), "fasta")
    return ids


# ----------------------------- merging ----------------------------- #

@dataclass
class MergeResult:
    """Merged table plus what happened to duplicated sample labels.

    Attributes
    ----------
    table : DataFrame
        Union of all rows and variants; absent combinations are 0.
    duplicates : dict
        ``label -> [table names]`` for labels found in more than one table.
    disambiguated : dict
        ``label -> [labels in the merged table]`` for duplicated labels kept
        as separate rows.
    skipped : list
        Names of input tables that were empty and left out.
    """

    table: pd.DataFrame
    duplicates: Dict[str, List[str]] = field(default_factory=dict)
    disambiguated: Dict[str, List[str]] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


def _named(tables: Union[Mapping[str, pd.DataFrame], Sequence[pd.DataFrame]]) -> List[Tuple[str, pd.DataFrame]]:
    if isinstance(tables, Mapping):
        return [(str(k), v) for k, v in tables.items()]
    return [(f"table{i}", t) for i, t in enumerate(tables, start=1)]


def _distinct_origins(label: str, names: List[str],
                      origins: Optional[Mapping[str, Mapping[str, str]]]) -> bool:
    """True when the tables sharing ``label`` say it is different physical samples."""
    if not origins:
        return False
    seen = {origins.get(n, {}).get(label) for n in names}
    seen.discard(None)
    return len(seen) > 1


def merge_sequence_tables(
    tables: Union[Mapping[str, pd.DataFrame], Sequence[pd.DataFrame]],
    *,
    origins: Optional[Mapping[str, Mapping[str, str]]] = None,
    on_duplicate: str = "sum",
) -> MergeResult:
    """Union per-run sequence tables into one sample x variant table.

    Counts for the same sample and variant are added; combinations missing
    from every input are 0. Rows keep first-seen order across inputs;
    variant columns likewise.

    A sample label present in more than one input is always reported. It is
    summed into one row (one sample spread over runs) unless
    ``on_duplicate='keep'`` or ``origins`` show the tables mean different
    physical samples; then each occurrence keeps its own row, later ones
    suffixed ``.1``, ``.2``, ...

    Args:
        tables: Tables keyed by name (usually run ID), or a plain sequence.
        origins: Optional ``table name -> {label: physical sample key}``.
        on_duplicate: 'sum' or 'keep'.

    Returns:
        A ``MergeResult``.

    Raises:
        ConfigError: If ``on_duplicate`` is not a known policy.
    """
    if on_duplicate not in DUPLICATE_POLICIES:
        raise ConfigError(f"on_duplicate must be one of {DUPLICATE_POLICIES}, got '{on_duplicate}'")

    named = []
    skipped: List[str] = []
    for name, tab in _named(tables):
        if tab is None or tab.empty:
            skipped.append(name)
            continue
        labels = tab[SAMPLE_KEY].astype(str).tolist()
        if len(set(labels)) != len(labels):
            log.warning("Table %s repeats sample labels; suffixing within the table.", name)
            tab = tab.copy()
            tab[SAMPLE_KEY] = make_unique(labels)
        named.append((name, tab))
    if skipped:
        log.warning("Skipping %d empty table(s): %s", len(skipped), summarise_examples(skipped))

    occurrences: Dict[str, List[str]] = {}
    for name, tab in named:
        for lab in tab[SAMPLE_KEY].astype(str):
            occurrences.setdefault(lab, []).append(name)
    duplicates = {lab: names for lab, names in occurrences.items() if len(names) > 1}
    separate = {
        lab for lab, names in duplicates.items()
        if on_duplicate == "keep" or _distinct_origins(lab, names, origins)
    }

    # One slot per output row; summed labels share the slot of their first sighting.
    slots: List[str] = []
    slot_of: Dict[Tuple[str, str], int] = {}
    first_slot: Dict[str, int] = {}
    for name, tab in named:
        for lab in tab[SAMPLE_KEY].astype(str):
            if lab in separate:
                slot_of[(name, lab)] = len(slots)
                slots.append(lab)
            else:
                if lab not in first_slot:
                    first_slot[lab] = len(slots)
                    slots.append(lab)
                slot_of[(name, lab)] = first_slot[lab]
    final_labels = make_unique(slots)

    frames = []
    for name, tab in named:
        counts = tab[variant_columns(tab)].copy()
        counts.index = [final_labels[slot_of[(name, lab)]] for lab in tab[SAMPLE_KEY].astype(str)]
        frames.append(counts)

    if frames:
        stacked = pd.concat(frames, axis=0, sort=False).fillna(0)
        summed = stacked.groupby(level=0, sort=False).sum()
        summed = summed.reindex(index=final_labels, fill_value=0).astype(int)
    else:
        summed = pd.DataFrame(index=pd.Index([], dtype=str))
    merged = summed.reset_index(drop=True)
    merged.insert(0, SAMPLE_KEY, final_labels)

    disambiguated: Dict[str, List[str]] = {}
    for lab in separate:
        disambiguated[lab] = [final_labels[slot_of[(n, lab)]] for n in duplicates[lab]]

    if duplicates:
        summed_labels = sorted(set(duplicates) - separate)
        if summed_labels:
            log.warning(
                "%d sample label(s) appear in more than one table and were summed: %s",
                len(summed_labels), summarise_examples(summed_labels),
            )
        if separate:
            log.warning(
                "%d sample label(s) refer to different samples across tables and were suffixed: %s",
                len(separate), summarise_examples(sorted(separate)),
            )

    return MergeResult(
        table=merged,
        duplicates=duplicates,
        disambiguated=disambiguated,
        skipped=skipped,
    )


# ----------------------------- collapsing ----------------------------- #

def no_mismatch_overlap(a: str, b: str, min_overlap: int = 20) -> bool:
    """True if the shorter sequence is a prefix or suffix of the longer one.

    Both sequences must agree over at least ``min_overlap`` bases; identical
    sequences always match.
    """
    if a == b:
        return True
    short, long_ = (a, b) if len(a) <= len(b) else (b, a)
    if len(short) < min_overlap:
        return False
    return long_.startswith(short) or long_.endswith(short)


@dataclass
class CollapseResult:
    """Collapsed table plus the variant -> representative mapping."""

    table: pd.DataFrame
    representative: Dict[str, str]

    @property
    def n_collapsed(self) -> int:
        return sum(1 for s, r in self.representative.items() if s != r)


def collapse_no_mismatch(
    table: pd.DataFrame,
    *,
    policy: str = "longest",
    min_overlap: int = 20,
) -> CollapseResult:
    """Fold together variants that differ only by leading/trailing length.

    Variants are visited in representative-preference order; each joins the
    first existing representative it overlaps without mismatches, otherwise
    it becomes a representative itself. Counts of the members are summed into
    the representative's column, so the table total is unchanged.

    Args:
        table: Sequence table.
        policy: 'longest' (longest sequence wins, ties by lexical order) or
            'abundant' (most reads wins, then longest, then lexical).
        min_overlap: Minimum overlap length for two variants to be joined.

    Returns:
        A ``CollapseResult``; representative columns keep the original
        column order.

    Raises:
        ConfigError: If ``policy`` is not a known policy.
    """
    if policy not in REPRESENTATIVE_POLICIES:
        raise ConfigError(f"policy must be one of {REPRESENTATIVE_POLICIES}, got '{policy}'")

    seqs = variant_columns(table)
    totals = table[seqs].sum(axis=0) if seqs else pd.Series(dtype=int)
    if policy == "longest":
        order = sorted(seqs, key=lambda s: (-len(s), s))
    else:
        order = sorted(seqs, key=lambda s: (-int(totals[s]), -len(s), s))

    reps: List[str] = []
    representative: Dict[str, str] = {}
    for s in order:
        for r in reps:
            if no_mismatch_overlap(s, r, min_overlap):
                representative[s] = r
                break
        else:
            reps.append(s)
            representative[s] = s

    members: Dict[str, List[str]] = {}
    for s in seqs:
        members.setdefault(representative[s], []).append(s)
    rep_order = [s for s in seqs if s in members]

    collapsed = pd.DataFrame(
        {rep: table[members[rep]].sum(axis=1).astype(int) for rep in rep_order},
        index=table.index,
    )
    out = pd.concat([table[[SAMPLE_KEY]], collapsed], axis=1).reset_index(drop=True)

    result = CollapseResult(table=out, representative=representative)
    log.info(
        "Collapsed %d variant(s) into %d representative(s) (policy=%s).",
        len(seqs), len(rep_order), policy,
    )
    return result
