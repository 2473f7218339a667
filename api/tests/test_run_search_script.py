from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SCRIPT_PATH = ROOT / "scripts" / "run_search.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("MC_")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT / "api"), env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=False,
        capture_output=True,
        text=True,
        env=env,
    )


def test_run_search_without_providers_reports_rejection() -> None:
    completed = _run_script("climate reporters", "--beat", "climate")

    assert completed.returncode == 2
    assert "search rejected: UPSTREAM_UNAVAILABLE" in completed.stderr


def test_run_search_requires_a_query() -> None:
    completed = _run_script()

    assert completed.returncode != 0
    assert "query" in completed.stderr
