"""
Run one Allianz quote locally (no webhook server)

Usage:
    python run_local.py [input.json]

Input is taken from the file argument, else the QUOTE_INPUT environment
variable (JSON string), else ./input.json, else the form defaults.
"""
import asyncio
import os
import sys
import time
from pathlib import Path

from allianz_quote import run_quote
from quote_models import QuoteAutomationError, RunStatus

# Fix Windows console encoding
if sys.platform == 'win32':
    sys.stdout.reconfigure(encoding='utf-8')

DEFAULT_INPUT_FILE = Path("input.json")


def load_input(argv=None):
    """Raw input for prepare_form_data: file contents, env JSON, or None"""
    argv = sys.argv[1:] if argv is None else argv

    if argv:
        return Path(argv[0]).read_text(encoding='utf-8')

    env_input = os.getenv("QUOTE_INPUT")
    if env_input:
        return env_input

    if DEFAULT_INPUT_FILE.exists():
        return DEFAULT_INPUT_FILE.read_text(encoding='utf-8')

    return None


async def main(argv=None) -> int:
    run_id = f"local_{int(time.time())}"

    print("=" * 80)
    print("ALLIANZ QUOTE - LOCAL RUN")
    print("=" * 80)
    print(f"Run ID: {run_id}")

    raw_input = load_input(argv)
    if raw_input is None:
        print("No input given, using form defaults")

    try:
        report = await run_quote(raw_input, run_id=run_id)
    except QuoteAutomationError as e:
        print(f"\nRun failed: {e}")
        print(f"Report: datasets/{run_id}.json")
        return 2

    record = report.to_dict()
    processing = record["formProcessing"]

    print(f"\nStatus: {report.status.value}")
    print(f"Fields filled: {processing['fieldsFilled']}")
    print(f"Submitted: {processing['submitted']}")
    print(f"Quote captured: {record['quote'].get('captured')}")
    if processing["errors"]:
        print("Errors:")
        for error in processing["errors"]:
            print(f"  - {error}")
    print(f"Screenshots: screenshots/{run_id}/")
    print(f"Report: datasets/{run_id}.json")
    print("=" * 80)

    return 0 if report.status == RunStatus.SUCCESS else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
