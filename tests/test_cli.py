import os
import csv
import subprocess
import sys

from pmxsim.cli import run_cli


def test_cli_oral(tmp_path):
    out_csv = tmp_path / "out.csv"
    cmd = [sys.executable, "-m", "pmxsim.cli", "oral1c", "--dose", "100", "--n", "2", "--every", "12", "--nid", "2", "--seed", "1", "--csv", str(out_csv)]
    subprocess.check_call(cmd, cwd=os.getcwd())
    assert out_csv.exists()
    with open(out_csv, newline="") as f:
        rows = list(csv.reader(f))
        assert len(rows) > 2
        assert rows[0][:2] == ["ID", "time"]
        assert "CP" in rows[0]
        assert {r[0] for r in rows[1:]} == {"1", "2"}


def test_cli_multistate_writes_status(tmp_path):
    out_csv = tmp_path / "ms.csv"
    status_csv = tmp_path / "status.csv"
    code = run_cli(["multistate", "--nid", "5", "--seed", "3", "--end", "20", "--delta", "5", "--csv", str(out_csv), "--status-csv", str(status_csv)])
    assert code == 0
    with open(status_csv, newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 5
    assert all(r["status"] == "success" for r in rows)
    with open(out_csv, newline="") as f:
        header = next(csv.reader(f))
    assert "STATE" in header


def test_cli_rejects_bad_method(tmp_path):
    code = run_cli(["iv1c", "--method", "euler", "--csv", str(tmp_path / "x.csv")])
    assert code == 2
    assert not (tmp_path / "x.csv").exists()


def test_cli_rejects_non_positive_delta(tmp_path):
    assert run_cli(["iv1c", "--delta", "0", "--csv", str(tmp_path / "x.csv")]) == 2
    assert run_cli(["iv1c", "--end", "-4", "--csv", str(tmp_path / "x.csv")]) == 2
    assert not (tmp_path / "x.csv").exists()
