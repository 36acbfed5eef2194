import subprocess
import sys

import pandas as pd
import pytest

from amplicon_common import run_cmd, summarise_examples, write_report_row


def test_run_cmd_logs_command_and_exit_status(tmp_path):
    log_file = tmp_path / "logs" / "step.log"
    run_cmd(cmd=[sys.executable, "-c", "print('hello')"], log_file=log_file)
    text = log_file.read_text()
    assert text.startswith("$ ")
    assert "hello" in text
    assert text.rstrip().endswith("# exit status 0")


def test_run_cmd_raises_on_failure(tmp_path):
    log_file = tmp_path / "step.log"
    with pytest.raises(subprocess.CalledProcessError) as exc:
        run_cmd(cmd=[sys.executable, "-c", "import sys; sys.exit(4)"], log_file=log_file)
    assert exc.value.returncode == 4
    assert "# exit status 4" in log_file.read_text()


def test_write_report_row_keeps_columns_aligned(tmp_path):
    path = tmp_path / "run_report.tsv"
    write_report_row(report_path=path, fields={"run": "runA", "failed_examples": "none"})
    write_report_row(report_path=path, fields={"run": "runB", "failed_examples": "bad\tvalue\nsplit"})
    report = pd.read_csv(path, sep="\t")
    assert report["run"].tolist() == ["runA", "runB"]
    assert report["failed_examples"].tolist() == ["none", "bad value split"]


def test_summarise_examples_truncates():
    assert summarise_examples(["a", "b"]) == "a, b"
    assert summarise_examples([str(i) for i in range(7)], limit=2) == "0, 1, ... (+5 more)"
    assert summarise_examples([]) == ""
