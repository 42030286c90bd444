"""Extract structured records from a raw citation dump.

The input text is cleaned, cut into batches and sent to the LLM one batch at
a time.  Progress is written to the review state document after every batch,
so the run can be continued later with ``resume`` (after a stop or a fatal
error) or ``fix`` (after a batch reply could not be parsed).

Press Ctrl-C once to stop after the current batch; press it again to abort
immediately.

Environment variables
---------------------
- ``OPENAI_API_KEY`` - used when the config does not provide a key.

Usage
-----
```bash
python scripts/extract_records.py run --input data/citations.txt --topic "Fire ecology"
python scripts/extract_records.py fix --input data/review_state.fix.txt
python scripts/extract_records.py resume
```
"""

from __future__ import annotations

import argparse
from pathlib import Path
import signal
import sys
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from litreview_pipeline.cli import (
    add_common_arguments,
    configure_logging,
    open_workspace,
    print_json,
    run_command,
)
from litreview_pipeline.extraction import ExtractionResult
from litreview_pipeline.models import BatchStatus
from litreview_pipeline.workspace import ReviewWorkspace


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    add_common_arguments(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start a new extraction run")
    run_parser.add_argument("--input", required=True, help="Raw citation text file ('-' for stdin)")
    run_parser.add_argument(
        "--species",
        action="store_true",
        help="Also extract the studied species for each record (kept for fix and resume)",
    )

    fix_parser = subparsers.add_parser("fix", help="Retry the paused batch with corrected text")
    fix_parser.add_argument("--input", required=True, help="File holding the corrected batch text")

    subparsers.add_parser("resume", help="Continue a stopped or failed run")
    return parser


def _read_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def fix_path_for(workspace: ReviewWorkspace) -> Path:
    return workspace.state_path.with_suffix(".fix.txt")


def _report(workspace: ReviewWorkspace, result: ExtractionResult) -> int:
    payload: dict[str, Any] = {
        "status": result.status.value,
        "batches_processed": result.batches_processed,
        "batches_total": result.batches_total,
        "records_added": result.records_added,
        "records_total": len(workspace.corpus.records),
        "retry_delays": [round(delay, 2) for delay in result.retry_delays],
        "truncated_batches": [index + 1 for index in result.truncated_batches],
    }
    if result.error_kind is not None:
        payload["error_kind"] = result.error_kind.value
        payload["message"] = result.message
    if result.audit is not None:
        payload["audit_fixes_applied"] = len(result.audit.applied)
    print_json(payload)

    if result.status is BatchStatus.AWAITING_FIX:
        fix_path = fix_path_for(workspace)
        fix_path.parent.mkdir(parents=True, exist_ok=True)
        fix_path.write_text(workspace.corpus.extraction.fix_text or "", encoding="utf-8")
        print(
            f"Batch {workspace.corpus.extraction.batch_index + 1} could not be parsed. "
            f"Edit {fix_path} and run: extract_records.py fix --input {fix_path}",
            file=sys.stderr,
        )
        return 2
    if result.status is BatchStatus.FAILED_FATAL:
        if result.export_recommended:
            print(
                "Quota exhausted. Export your state with manage_state.py export and "
                "continue once the quota resets.",
                file=sys.stderr,
            )
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    def command() -> int:
        workspace = open_workspace(args)
        service = workspace.service
        if getattr(args, "species", False):
            service.enable_species = True

        interrupts = {"count": 0}

        def _handle_sigint(signum: int, frame: Any) -> None:
            interrupts["count"] += 1
            if interrupts["count"] > 1:
                raise KeyboardInterrupt
            print("Stopping after the current batch (Ctrl-C again to abort)...", file=sys.stderr)
            workspace.request_stop()

        previous = signal.signal(signal.SIGINT, _handle_sigint)
        try:
            if args.command == "run":
                result = workspace.extract(_read_text(args.input))
            elif args.command == "fix":
                result = workspace.fix(_read_text(args.input))
            else:
                result = workspace.resume()
        finally:
            signal.signal(signal.SIGINT, previous)
            workspace.save()
        return _report(workspace, result)

    return run_command(command)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
