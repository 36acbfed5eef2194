#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared plumbing for the soil amplicon pipeline.

Overview
--------
Holds the pieces every other module leans on: the run directory layout,
logging set-up, subprocess invocation with per-step logs, the run report
writer and the exception hierarchy.

Notes
-----
- Report tables are tab-separated (TSV).
- UK English spelling is used throughout documentation strings.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import psutil


# Wall-clock start for runtime/elapsed logging
_SCRIPT_START_TIME = time.time()


# ----------------------------- errors ----------------------------- #

class PipelineError(Exception):
    """Structural failure that aborts the batch (no files, no runs, ...)."""


class ConfigError(PipelineError):
    """Invalid configuration: missing directory, bad stage order, bad option."""


class MetadataSchemaError(ConfigError):
    """Metadata table lacks required fields or cannot be parsed."""


class StageError(Exception):
    """A stage failed on a single read unit; recorded, never fatal."""


# ----------------------------- layout ----------------------------- #

class Paths:
    """Container for key filesystem paths used in the run.

    Attributes
    ----------
    root : Path
        Root directory for all results.
    runs : Path
        One subdirectory per sequencing run (stage outputs, per-run tables).
    merged : Path
        Cross-run outputs (merged sequence table, joined samples).
    logs : Path
        Directory for log files.
    report_tsv : Path
        Tab-separated per-run summary rows.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.runs = self.root / "runs"
        self.merged = self.root / "merged"
        self.logs = self.root / "logs"
        self.report_tsv = self.root / "run_report.tsv"

    def run_dir(self, run_id: str) -> Path:
        """Return the working directory for one sequencing run."""
        return self.runs / run_id

    def mkdirs(self) -> None:
        """Create all output directories if they do not already exist."""
        for p in (self.runs, self.merged, self.logs):
            p.mkdir(parents=True, exist_ok=True)


# ----------------------------- logging -------------------------- #

def setup_logging(*, out_dir: Path, run_label: str) -> logging.Logger:
    """
    Configure logging to both stderr (human) and a file (machine).

    The file log captures DEBUG+ with timestamps; the stderr stream shows
    INFO+ with compact formatting. Library modules log under
    ``soil_amplicon.<module>`` so their records reach the same handlers.

    Parameters
    ----------
    out_dir : pathlib.Path
        The run's output directory.
    run_label : str
        Identifier for the batch; used in initial banner lines.

    Returns
    -------
    logging.Logger
        Configured logger instance ('soil_amplicon').
    """
    log_dir = Path(out_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "run_debug.log"

    logger = logging.getLogger("soil_amplicon")
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    file_handler = logging.FileHandler(filename=log_file, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    logger.info("Run label: %s", run_label)
    logger.info("Output directory: %s", Path(out_dir).resolve())
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the pipeline logger for a library module."""
    return logging.getLogger(f"soil_amplicon.{name}")


def log_section(*, logger: logging.Logger, title: str) -> None:
    """
    Emit a visible section divider in logs.

    Parameters
    ----------
    logger : logging.Logger
        Logger to write to.
    title : str
        Short section title.
    """
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: str | None = None,
) -> None:
    """
    Log the current resident set size plus elapsed wall time.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    prefix : str
        Optional prefix (e.g., 'START', 'END', or a run label).
    extra_msg : str | None
        Optional extra text appended to the log message.
    """
    cur_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)
    elapsed_min = max(0.0, time.time() - _SCRIPT_START_TIME) / 60.0

    parts = []
    if prefix:
        parts.append(prefix.strip())
    parts.append(f"RAM: {cur_gb:.2f} GB")
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)

    logger.info(" | ".join(parts))


def summarise_examples(items: Iterable[str], limit: int = 5) -> str:
    """Return a short comma-joined sample of identifiers for log lines."""
    items = list(items)
    head = ", ".join(items[:limit])
    if len(items) > limit:
        head += f", ... (+{len(items) - limit} more)"
    return head


# ----------------------------- helpers ----------------------------- #

def run_cmd(*, cmd: List[str], log_file: Path, logger: Optional[logging.Logger] = None) -> None:
    """Run an external tool (cutadapt, the denoiser) without a shell.

    Both output streams go to ``log_file``, which several units of a stage
    may share; each call is headed by its command line and closed by its
    exit status.

    Raises:
        subprocess.CalledProcessError: If the tool exits non-zero.
        OSError: If the executable cannot be started.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    line = " ".join(str(tok) for tok in cmd)
    if logger is not None:
        logger.info("▶ %s", line)
        logger.debug("Step log: %s", log_file)

    with log_file.open("a", encoding="utf-8") as lf:
        lf.write(f"$ {line}\n")
        lf.flush()
        proc = subprocess.run(cmd, stdout=lf, stderr=lf, check=False)
        lf.write(f"# exit status {proc.returncode}\n")
    if proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd)


_FLATTEN = str.maketrans("\t\r\n", "   ")


def write_report_row(*, report_path: Path, fields: Dict[str, str]) -> None:
    """Append one run's row to ``run_report.tsv``; the first row brings the header.

    Tabs and line breaks inside values become spaces, so an error message
    cannot shift the columns.
    """
    report_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not report_path.exists()
    with report_path.open("a", encoding="utf-8") as fh:
        if is_new:
            fh.write("\t".join(fields.keys()) + "\n")
        fh.write("\t".join(str(v).translate(_FLATTEN) for v in fields.values()) + "\n")
