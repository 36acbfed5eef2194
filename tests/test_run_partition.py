from pathlib import Path

import pandas as pd
import pytest

from amplicon_common import ConfigError
from run_partition import (
    extract_run_id,
    files_from_metadata,
    find_fastqs,
    mate_of,
    partition_runs,
    write_run_manifest,
)


def _touch(d: Path, *names):
    d.mkdir(parents=True, exist_ok=True)
    for n in names:
        (d / n).write_text("")
    return [d / n for n in names]


def test_partition_drops_run_without_mates():
    paths = [Path("runA_x_R1.fastq"), Path("runA_x_R2.fastq"), Path("runB_y_R1.fastq")]
    result = partition_runs(paths, paired=True)
    assert result.run_ids == ["runA"]
    assert len(result.group("runA").files) == 2
    assert len(result.unpaired) == 1
    unit = result.group("runA").units[0]
    assert unit.name == "runA_x_R1.fastq"
    assert unit.reverse == Path("runA_x_R2.fastq")


def test_single_end_keeps_every_file():
    paths = [Path("runA_x_R1.fastq"), Path("runB_y_R1.fastq")]
    result = partition_runs(paths, paired=False)
    assert result.run_ids == ["runA", "runB"]
    assert not result.unpaired


def test_files_without_run_id_are_unassigned():
    result = partition_runs([Path("sampleA_R1.fastq"), Path("runQ_s_R1.fq")], paired=False)
    assert result.run_ids == ["runQ"]
    assert result.unassigned == [Path("sampleA_R1.fastq")]


def test_run_order_is_first_seen_and_files_sorted():
    paths = [Path("runZ_b_R1.fq"), Path("runA_a_R1.fq"), Path("runZ_a_R1.fq")]
    result = partition_runs(paths, paired=False)
    assert result.run_ids == ["runZ", "runA"]
    assert [p.name for p in result.group("runZ").files] == ["runZ_a_R1.fq", "runZ_b_R1.fq"]


def test_pattern_needs_one_group():
    with pytest.raises(ConfigError):
        partition_runs([Path("runA_x_R1.fq")], run_pattern=r"^run[A-Z]+_")


def test_extract_run_id_and_mate_of():
    import re

    assert extract_run_id("runB69PP_BMI_16S_R1.fastq.gz", re.compile(r"^(run[A-Za-z0-9]+)_")) == "runB69PP"
    assert mate_of("runA_x_R2_001.fastq.gz") == ("2", "runA_x_R#_001.fastq.gz")
    assert mate_of("runA_x.fastq") == (None, "runA_x.fastq")


def test_find_fastqs_recurses(tmp_path):
    _touch(tmp_path / "a", "runA_x_R1.fastq.gz", "notes.txt")
    _touch(tmp_path / "b" / "c", "runB_y_R1.fq")
    found = find_fastqs(reads_dir=tmp_path)
    assert [p.name for p in found] == ["runA_x_R1.fastq.gz", "runB_y_R1.fq"]


def test_files_from_metadata_adds_mates_and_skips_missing(tmp_path):
    _touch(tmp_path, "runA_x_R1.fastq", "runA_x_R2.fastq", "runA_z_R1.fastq")
    md = pd.DataFrame({"rawDataFileName": ["runA_x_R1.fastq", "runA_gone_R1.fastq"]})
    picked = files_from_metadata(metadata=md, raw_dir=tmp_path, file_column="rawDataFileName")
    assert [p.name for p in picked] == ["runA_x_R1.fastq", "runA_x_R2.fastq"]


def test_write_run_manifest(tmp_path):
    files = _touch(tmp_path, "runA_x_R1.fastq", "runA_x_R2.fastq")
    group = partition_runs(files).group("runA")
    out = tmp_path / "m" / "manifest.tsv"
    write_run_manifest(group=group, out_path=out)
    lines = out.read_text().splitlines()
    assert lines[0].split("\t") == ["sample-id", "forward-absolute-filepath", "reverse-absolute-filepath"]
    assert lines[1].startswith("runA_x_R1.fastq\t")
    assert lines[1].endswith("runA_x_R2.fastq")
