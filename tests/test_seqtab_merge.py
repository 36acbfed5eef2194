import pandas as pd
import pytest
from Bio import SeqIO

from amplicon_common import ConfigError
from conftest import seqtab
from seqtab_merge import (
    collapse_no_mismatch,
    merge_sequence_tables,
    no_mismatch_overlap,
    read_seqtab,
    remove_empty,
    total_reads,
    variant_columns,
    variant_fasta,
    write_seqtab,
)
from stage_tracker import SAMPLE_KEY

V1 = "ACGT" * 10
V2 = "TTGCA" * 8
LONG = "GATTACAGGCTTAACCGTAGCATCGGATCCTAGAATTCGCAT"
SHORT = LONG[:30]


@pytest.fixture
def two_runs():
    a = seqtab({"s1": {V1: 10}, "s2": {V1: 5}})
    b = seqtab({"s2": {V1: 3, V2: 0}, "s3": {V1: 7, V2: 2}})
    return {"runA": a, "runB": b}


def test_duplicate_label_is_summed(two_runs):
    result = merge_sequence_tables(two_runs)
    table = result.table.set_index(SAMPLE_KEY)
    assert table.index.tolist() == ["s1", "s2", "s3"]
    assert variant_columns(result.table) == [V1, V2]
    assert table.loc["s1"].tolist() == [10, 0]
    assert table.loc["s2"].tolist() == [8, 0]
    assert table.loc["s3"].tolist() == [7, 2]
    assert result.duplicates == {"s2": ["runA", "runB"]}
    assert not result.disambiguated


def test_column_totals_equal_sum_of_inputs(two_runs):
    merged = merge_sequence_tables(two_runs).table
    assert merged[V1].sum() == 10 + 5 + 3 + 7
    assert merged[V2].sum() == 2
    assert total_reads(merged) == sum(total_reads(t) for t in two_runs.values())


def test_keep_mode_suffixes_later_occurrence(two_runs):
    result = merge_sequence_tables(two_runs, on_duplicate="keep")
    assert result.table[SAMPLE_KEY].tolist() == ["s1", "s2", "s2.1", "s3"]
    assert result.disambiguated == {"s2": ["s2", "s2.1"]}
    assert result.table.set_index(SAMPLE_KEY).loc["s2.1", V1] == 3


def test_origins_distinguish_physical_samples(two_runs):
    origins = {"runA": {"s2": "SOIL-1"}, "runB": {"s2": "SOIL-2"}}
    result = merge_sequence_tables(two_runs, origins=origins)
    assert result.table[SAMPLE_KEY].tolist() == ["s1", "s2", "s2.1", "s3"]

    same = {"runA": {"s2": "SOIL-1"}, "runB": {"s2": "SOIL-1"}}
    assert merge_sequence_tables(two_runs, origins=same).table[SAMPLE_KEY].tolist() == ["s1", "s2", "s3"]


def test_empty_tables_are_skipped(two_runs):
    tables = dict(two_runs, runC=pd.DataFrame(columns=[SAMPLE_KEY]))
    result = merge_sequence_tables(tables)
    assert result.skipped == ["runC"]
    assert len(result.table) == 3


def test_sequence_input_and_bad_policy():
    a = seqtab({"x": {V1: 1}})
    assert merge_sequence_tables([a, a]).duplicates == {"x": ["table1", "table2"]}
    with pytest.raises(ConfigError):
        merge_sequence_tables([a], on_duplicate="drop")


def test_no_mismatch_overlap():
    assert no_mismatch_overlap(LONG, SHORT)
    assert no_mismatch_overlap(LONG, LONG[-25:])
    assert not no_mismatch_overlap(LONG, LONG[5:35])
    assert not no_mismatch_overlap(LONG, LONG[:10])  # below min_overlap
    assert no_mismatch_overlap(LONG[:10], LONG[:10])


def test_collapse_preserves_totals_and_prefers_longest():
    table = seqtab({"a": {SHORT: 100, LONG: 1, V1: 4}, "b": {SHORT: 5, LONG: 2, V1: 0}})
    result = collapse_no_mismatch(table)
    assert variant_columns(result.table) == [LONG, V1]
    assert result.representative[SHORT] == LONG
    assert result.n_collapsed == 1
    assert total_reads(result.table) == total_reads(table)
    assert result.table.set_index(SAMPLE_KEY).loc["a", LONG] == 101


def test_collapse_abundant_policy():
    table = seqtab({"a": {SHORT: 100, LONG: 1}})
    result = collapse_no_mismatch(table, policy="abundant")
    assert variant_columns(result.table) == [SHORT]
    assert result.table[SHORT].tolist() == [101]
    with pytest.raises(ConfigError):
        collapse_no_mismatch(table, policy="first")


def test_remove_empty_and_io(tmp_path):
    table = seqtab({"a": {V1: 3, V2: 0}, "b": {V1: 0, V2: 0}})
    trimmed = remove_empty(table)
    assert trimmed[SAMPLE_KEY].tolist() == ["a"]
    assert variant_columns(trimmed) == [V1]

    path = write_seqtab(trimmed, tmp_path / "t.tsv")
    pd.testing.assert_frame_equal(read_seqtab(path), trimmed)


def test_variant_fasta(tmp_path):
    table = seqtab({"a": {V1: 3, V2: 1}})
    ids = variant_fasta(table, tmp_path / "asv.fasta")
    assert ids == {"ASV1": V1, "ASV2": V2}
    records = list(SeqIO.parse(str(tmp_path / "asv.fasta"), "fasta"))
    assert [(r.id, str(r.seq)) for r in records] == [("ASV1", V1), ("ASV2", V2)]
