import logging
import sys
import textwrap

import pandas as pd
import pytest

import soil_amplicon_runner as runner
from amplicon_common import PipelineError, get_logger
from conftest import GOOD_Q, seqtab, write_fastq
from filter_pipeline import DenoiseStage, FileStage, FilterPipeline, QualityFilterStage, count_fastq_records
from pipeline_config import ParameterSet, PipelineConfig
from sample_ids import IdResolver
from stage_tracker import PARAM_SET_KEY, RUN_KEY, SAMPLE_KEY

SEQ = "ACGT" * 15
VARIANT = "ACGT" * 12

# Counts reads per unit and reports them as one variant.
DENOISER = textwrap.dedent(
    """
    import gzip, json, sys
    from pathlib import Path

    params = json.loads(Path(sys.argv[1]).read_text())
    in_dir, out = Path(sys.argv[2]), Path(sys.argv[3])
    rows = []
    for files in params["units"]:
        with gzip.open(in_dir / files[0], "rt") as fh:
            rows.append((files[0], sum(1 for _ in fh) // 4))
    with open(out / "seqtab.tsv", "w") as fh:
        fh.write("sample_id\\t%s\\n" % "VARIANT")
        for name, n in rows:
            fh.write("%s\\t%d\\n" % (name, n))
    with open(out / "track.tsv", "w") as fh:
        fh.write("sample_id\\tdenoised\\tmerged\\tnonchim\\n")
        for name, n in rows:
            fh.write("%s\\t%d\\t%d\\t%d\\n" % (name, n, n, n))
    """
).replace("VARIANT", VARIANT)


class CopyTrim(FileStage):
    name = "trim"
    columns = ("trimmed",)

    def process_unit(self, unit, output_dir, params):
        for f in unit.files:
            (output_dir / f.name).write_bytes(f.read_bytes())
        return count_fastq_records(unit.forward)


@pytest.fixture
def stub_trim(monkeypatch):
    monkeypatch.setattr(
        runner,
        "build_pipeline",
        lambda cfg: FilterPipeline(
            [CopyTrim(), QualityFilterStage(), DenoiseStage(cfg.read_mode)], read_mode=cfg.read_mode
        ),
    )


def _paired(raw, run, sample, n):
    for mate in ("R1", "R2"):
        write_fastq(raw / run / f"{run}_{sample}_16S_X_{mate}.fastq.gz", [(SEQ, GOOD_Q)] * n)


@pytest.fixture
def batch(tmp_path):
    raw = tmp_path / "raw"
    _paired(raw, "runA", "s1", 3)
    _paired(raw, "runA", "s2", 2)
    _paired(raw, "runB", "s2", 4)
    # Unpaired file: excluded, not fatal.
    write_fastq(raw / "runB" / "runB_s9_16S_X_R1.fastq.gz", [(SEQ, GOOD_Q)])

    rows = []
    for run, sample, sid in (("A", "s1", "D1"), ("A", "s2", "D2"), ("B", "s2", "D2")):
        rows.append(
            {
                "rawDataFileName": f"run{run}_{sample}_16S_X_R1.fastq.gz",
                "dnaSampleID": sid,
                "internalLabID": sample,
                "sequencerRunID": run,
                "collectDate": "2019-07-01",
                "siteID": "SITE" + sid,
                "plotID": "P1",
                "qaqcStatus": "Pass",
            }
        )
    md = tmp_path / "metadata.csv"
    pd.DataFrame(rows).to_csv(md, index=False)

    script = tmp_path / "denoise.py"
    script.write_text(DENOISER)
    return raw, md, script


def _config(tmp_path, raw, script, **kw):
    return PipelineConfig(
        reads_dir=raw,
        out_dir=tmp_path / "out",
        denoise_command=(sys.executable, str(script), "{params_json}", "{input_dir}", "{output_dir}"),
        trunc_len=(50, 50),
        **kw,
    )


def test_full_batch(tmp_path, batch, stub_trim):
    raw, md, script = batch
    cfg = _config(tmp_path, raw, script, metadata=md, run_workers=2)
    summary = runner.run_pipeline(cfg, get_logger("test"))

    out = tmp_path / "out"
    final = pd.read_csv(out / "merged" / "seqtab_final.tsv", sep="\t")
    assert final[SAMPLE_KEY].tolist() == ["D1", "D2"]
    assert final[VARIANT].tolist() == [3, 6]

    samples = pd.read_csv(out / "merged" / "samples.tsv", sep="\t")
    assert samples[SAMPLE_KEY].tolist() == final[SAMPLE_KEY].tolist()
    assert samples["siteID"].tolist() == ["SITED1", "SITED2"]

    track = pd.read_csv(out / "merged" / "track_all.csv")
    assert sorted(zip(track[RUN_KEY], track[SAMPLE_KEY], track["nonchim"])) == [
        ("runA", "s1", 3), ("runA", "s2", 2), ("runB", "s2", 4),
    ]
    assert (out / "runs" / "runA" / "seqtab.tsv").exists()
    assert (out / "runs" / "runB" / "track.csv").exists()
    assert (out / "merged" / "asv_sequences.fasta").exists()

    report = pd.read_csv(out / "run_report.tsv", sep="\t")
    assert sorted(report["run"]) == ["runA", "runB"]
    assert set(report["status"]) == {"ok"}

    assert summary["reads"] == 9
    assert summary["duplicate_labels"] == 1
    assert summary["duplicate_labels_examples"] == "s2"
    assert summary["unpaired_files"] == 1
    assert summary["unpaired_files_examples"] == "runB_s9_16S_X_R1.fastq.gz"
    assert summary["unresolved_ids"] == 0
    assert summary["unresolved_ids_examples"] == "none"
    assert summary["unused_metadata"] == 0
    assert summary["empty_samples_dropped"] == 0


def test_resume_loads_finished_runs(tmp_path, batch, stub_trim):
    raw, md, script = batch
    runner.run_pipeline(_config(tmp_path, raw, script), get_logger("test"))

    failing = tmp_path / "fail.py"
    failing.write_text("import sys\nsys.exit(1)\n")
    cfg = _config(tmp_path, raw, failing, resume=True)
    summary = runner.run_pipeline(cfg, get_logger("test"))
    assert summary["reads"] == 9
    report = pd.read_csv(tmp_path / "out" / "run_report.tsv", sep="\t")
    assert report["status"].tolist()[-2:] == ["resumed", "resumed"]


def test_parameter_sweep_labels_rows(tmp_path, batch, stub_trim):
    raw, _, script = batch
    sets = (ParameterSet({"max_ee": [2, 2]}), ParameterSet({"max_ee": [1, 1]}))
    cfg = _config(tmp_path, raw, script, parameter_sets=sets)
    runner.run_pipeline(cfg, get_logger("test"))

    track = pd.read_csv(tmp_path / "out" / "merged" / "track_all.csv")
    assert set(track[PARAM_SET_KEY]) == {"max_ee=2/2", "max_ee=1/1"}
    assert len(track) == 6
    samples = pd.read_csv(tmp_path / "out" / "merged" / "samples.tsv", sep="\t")
    assert len(samples) == 4


def test_no_fastqs_is_fatal(tmp_path):
    (tmp_path / "raw").mkdir()
    cfg = _config(tmp_path, tmp_path / "raw", tmp_path / "x.py")
    with pytest.raises(PipelineError, match="No FASTQs"):
        runner.run_pipeline(cfg, get_logger("test"))


def test_main_exits_2_on_config_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        sys, "argv",
        ["soil-amplicon", "--reads_dir", str(tmp_path / "missing"), "--out_dir", str(tmp_path / "out"),
         "--denoise_command", "x"],
    )
    try:
        with pytest.raises(SystemExit) as exc:
            runner.main()
    finally:
        pipeline_logger = logging.getLogger("soil_amplicon")
        pipeline_logger.handlers.clear()
        pipeline_logger.propagate = True
    assert exc.value.code == 2
    assert "ERROR: Reads directory not found" in capsys.readouterr().err


def test_reconcile_labels_under_sweep():
    resolver = IdResolver({"s1": "D1"})
    labels, report = runner.reconcile_labels(["p=1|s1", "p=2|s1", "s1", "p=1|zz", "p=2|zz"], resolver, sweep=True)
    assert labels == ["p=1|D1", "p=2|D1", "D1", "p=1|zz", "p=2|zz"]
    assert report.failures == ["zz"]

    labels, report = runner.reconcile_labels(["s1", "zz"], resolver, sweep=False)
    assert labels == ["D1", "zz"]
    assert report.failures == ["zz"]


def test_resume_reprocesses_run_with_missing_table(tmp_path, batch, stub_trim):
    raw, _, script = batch
    runner.run_pipeline(_config(tmp_path, raw, script), get_logger("test"))
    (tmp_path / "out" / "runs" / "runB" / "seqtab.tsv").unlink()

    summary = runner.run_pipeline(_config(tmp_path, raw, script, resume=True), get_logger("test"))
    assert summary["reads"] == 9
    assert summary["runs_empty"] == 0
    report = pd.read_csv(tmp_path / "out" / "run_report.tsv", sep="\t")
    assert report["status"].tolist()[-2:] == ["resumed", "ok"]


def test_summary_counts_recoverable_problems(tmp_path, batch, stub_trim):
    raw, md, script = batch
    _paired(raw, "runB", "s5", 2)
    records = pd.read_csv(md)
    extra = records.iloc[[0]].assign(
        rawDataFileName="runB_s7_16S_X_R1.fastq.gz", dnaSampleID="D3",
        internalLabID="s7", sequencerRunID="B",
    )
    pd.concat([records, extra]).to_csv(md, index=False)

    summary = runner.run_pipeline(_config(tmp_path, raw, script, metadata=md), get_logger("test"))
    assert summary["unresolved_ids"] == 1
    assert summary["unresolved_ids_examples"] == "s5"
    assert summary["samples_without_metadata"] == 1
    assert summary["samples_without_metadata_examples"] == "s5"
    assert summary["unused_metadata"] == 1
    assert summary["unused_metadata_examples"] == "D3"
    assert summary["reads"] == 11

    final = pd.read_csv(tmp_path / "out" / "merged" / "seqtab_final.tsv", sep="\t")
    assert final[SAMPLE_KEY].tolist() == ["D1", "D2", "s5"]


def test_drop_empty_samples_reports_dropped_ids():
    table = seqtab({"a": {VARIANT: 3}, "b": {VARIANT: 0}, "c": {VARIANT: 1}})
    trimmed, dropped = runner.drop_empty_samples(table, get_logger("test"))
    assert trimmed[SAMPLE_KEY].tolist() == ["a", "c"]
    assert dropped == ["b"]

    summary = {}
    runner.add_problem(summary, "empty_samples_dropped", dropped)
    assert summary == {"empty_samples_dropped": 1, "empty_samples_dropped_examples": "b"}
