"""Shared fixtures: synthetic FASTQs and small tables."""

import gzip
import sys
from pathlib import Path

import pandas as pd
import pytest

# Root-level modules, importable without installation.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from stage_tracker import SAMPLE_KEY  # noqa: E402

GOOD_Q = "I" * 60  # Phred 40
BAD_Q = "#" * 60   # Phred 2


def write_fastq(path: Path, reads):
    """Write ``(seq, qual)`` pairs as FASTQ, gzipped when the name ends in .gz."""
    path.parent.mkdir(parents=True, exist_ok=True)
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "wt", encoding="utf-8") as fh:
        for i, (seq, qual) in enumerate(reads, start=1):
            fh.write(f"@read{i}\n{seq}\n+\n{qual}\n")
    return path


def seqtab(rows):
    """Build a sequence table from ``{sample: {variant: count}}``."""
    df = pd.DataFrame.from_dict(rows, orient="index").fillna(0).astype(int)
    df.index.name = SAMPLE_KEY
    return df.reset_index()


@pytest.fixture
def fastq_writer():
    return write_fastq


@pytest.fixture
def make_seqtab():
    return seqtab
