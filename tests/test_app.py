import subprocess
import sys


def test_app_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "yearbook_distribution.app", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "main entrypoint" in out
    assert "coordinator" in out
    assert "pay" in out


def test_pay_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "yearbook_distribution.app", "pay", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "student-id" in out
    assert "amount-due" in out
    assert "--bills" in out
