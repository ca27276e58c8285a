from __future__ import annotations

import subprocess
import sys
from pathlib import Path

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "register_subscription.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_script_emits_insert_for_signed_subscription() -> None:
    output = _run_script(
        "--url",
        "https://crm.example.com/hooks",
        "--event",
        "property.new",
        "--event",
        "job.completed",
        "--secret",
        "it's-secret",
    )

    assert "insert into webhook_subscriptions" in output
    assert "array['job.completed', 'property.new']::text[]" in output
    assert "true, 'it''s-secret')" in output


def test_script_emits_inactive_unsigned_subscription() -> None:
    output = _run_script("--url", "https://crm.example.com/hooks", "--event", "crm.activity", "--inactive")

    assert "array['crm.activity']::text[], false, null)" in output
