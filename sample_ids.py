#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sample identifier reconciliation.

A sample turns up under several names: the raw FASTQ file stem
(``runB69PP_BMI_Plate37WellA12_16S_B69PP_R1.fastq.gz``), the sequencing lab's
internal ID (``BMI_Plate37WellA12``) and the externally issued DNA sample ID
(``BART_001-M-20160719-COMP-DNA1``). This module turns the first into the
second with an ordered list of regex rules, resolves that against a metadata
mapping to the third, and makes duplicated labels unique.

UK English spelling is used in docstrings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from amplicon_common import get_logger, summarise_examples

log = get_logger("sample_ids")


@dataclass(frozen=True)
class ReconciliationRule:
    """One ordered substitution applied to an identifier.

    Attributes:
        name: Short label used in debug logging.
        pattern: Regular expression to search for.
        replacement: Replacement text (``re.sub`` syntax).
    """

    name: str
    pattern: str
    replacement: str = ""

    def apply(self, text: str) -> str:
        return re.sub(self.pattern, self.replacement, text)


RUN_PREFIX = ReconciliationRule("run-prefix", r"^run[A-Za-z0-9]+_")
READ_SUFFIX = ReconciliationRule(
    "read-suffix", r"_R[12](_[0-9]{3})?(\.(fastq|fq))?(\.gz)?$"
)
EXTENSION = ReconciliationRule("extension", r"\.(fastq|fq)(\.gz)?$")
# Batch token only counts as such when it follows the gene-region tag.
BATCH_SUFFIX = ReconciliationRule("batch-suffix", r"(_(?:16S|ITS))_[A-Za-z0-9]+$", r"\1")
GENE_REGION = ReconciliationRule("gene-region", r"_(16S|ITS)$")
HYPHENS = ReconciliationRule("hyphens", r"-", "_")

DEFAULT_RULES: Tuple[ReconciliationRule, ...] = (
    RUN_PREFIX,
    READ_SUFFIX,
    EXTENSION,
    BATCH_SUFFIX,
    GENE_REGION,
    HYPHENS,
)


def canonical_id(text: str, rules: Sequence[ReconciliationRule] = DEFAULT_RULES) -> str:
    """Apply reconciliation rules in order and return the canonical identifier.

    Args:
        text: Raw filename, file stem or table row label.
        rules: Ordered rules; each sees the output of the previous one.

    Returns:
        The canonical sample identifier.
    """
    s = text.strip()
    for rule in rules:
        s = rule.apply(s)
    return s


def normalise_sample_id(text: str) -> str:
    """Return a normalised sample identifier safe for filenames and downstream tools.

    The normalisation performs:
    - Strip leading/trailing whitespace.
    - Replace spaces with '_'.
    - Replace bracketed numeric '(123)' with '.123'.
    - Coerce any remaining disallowed characters to '_' (allowed: [A-Za-z0-9._-]).
    """
    s = text.strip()
    s = s.replace(" ", "_")
    s = re.sub(r"\(([0-9]+)\)", r".\1", s)
    s = re.sub(r"[^A-Za-z0-9._\-]+", "_", s)
    return s


def make_unique(labels: Iterable[str], sep: str = ".") -> List[str]:
    """Disambiguate repeated labels by suffixing an occurrence counter.

    The first occurrence keeps its label; later ones become ``label.1``,
    ``label.2`` ... in first-seen order. A generated label never collides with
    any label already present in the input, so the output is always unique.
    Applying the function to its own output returns it unchanged.

    Args:
        labels: Labels in their current row order.
        sep: Separator placed before the counter.

    Returns:
        A list of unique labels, same length and order as the input.
    """
    labels = list(labels)
    taken = set(labels)
    seen: set[str] = set()
    counters: Dict[str, int] = {}
    out: List[str] = []
    for lab in labels:
        if lab not in seen:
            seen.add(lab)
            out.append(lab)
            continue
        n = counters.get(lab, 0)
        while True:
            n += 1
            candidate = f"{lab}{sep}{n}"
            if candidate not in taken:
                break
        counters[lab] = n
        taken.add(candidate)
        seen.add(candidate)
        out.append(candidate)
    return out


@dataclass
class ResolutionReport:
    """Outcome of resolving canonical identifiers to external sample IDs."""

    resolved: int = 0
    failures: List[str] = field(default_factory=list)
    collisions: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def n_failed(self) -> int:
        return len(self.failures)


class IdResolver:
    """Resolve canonical identifiers to authoritative external sample IDs.

    The mapping keys are canonicalised with the same rules as the labels
    being resolved, so ``BMI-Plate37WellA12`` in metadata matches
    ``BMI_Plate37WellA12`` derived from a filename.
    """

    def __init__(
        self,
        mapping: Mapping[str, str],
        rules: Sequence[ReconciliationRule] = DEFAULT_RULES,
    ) -> None:
        self.rules = tuple(rules)
        self._mapping: Dict[str, str] = {}
        for key, value in mapping.items():
            ckey = canonical_id(key, self.rules)
            if ckey in self._mapping and self._mapping[ckey] != value:
                log.warning(
                    "Canonical key %s maps to both %s and %s; keeping the first.",
                    ckey, self._mapping[ckey], value,
                )
                continue
            self._mapping.setdefault(ckey, value)

    def __len__(self) -> int:
        return len(self._mapping)

    def lookup(self, label: str) -> Optional[str]:
        """Return the external ID for ``label``, or ``None`` if unknown.

        Only an exact match on the canonical form counts; a lab ID that is
        merely a prefix of the label belongs to a different sample.
        """
        return self._mapping.get(canonical_id(label, self.rules))

    def resolve(self, labels: Sequence[str]) -> Tuple[List[str], ResolutionReport]:
        """Resolve a sequence of row labels, keeping order.

        Unresolved labels keep their canonical form and are listed in the
        report; they are never fatal. Distinct labels that resolve to the
        same external ID are made unique with occurrence suffixes.

        Args:
            labels: Row labels (file stems, lab IDs or canonical IDs).

        Returns:
            ``(new_labels, report)``.
        """
        report = ResolutionReport()
        resolved: List[str] = []
        sources: Dict[str, List[str]] = {}
        for lab in labels:
            ext = self.lookup(lab)
            if ext is None:
                report.failures.append(lab)
                resolved.append(canonical_id(lab, self.rules))
                continue
            report.resolved += 1
            resolved.append(ext)
            sources.setdefault(ext, []).append(lab)

        report.collisions = {k: v for k, v in sources.items() if len(v) > 1}
        if report.failures:
            log.warning(
                "%d identifier(s) had no metadata match: %s",
                report.n_failed, summarise_examples(report.failures),
            )
        if report.collisions:
            log.warning(
                "%d external ID(s) claimed by more than one label; suffixing: %s",
                len(report.collisions), summarise_examples(sorted(report.collisions)),
            )
        return make_unique(resolved), report
