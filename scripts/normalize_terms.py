"""Standardise driver, response, location and species terms across all records.

Records are sent to the LLM in chunks; only values that actually change are
written back.  Running the command again on a normalised corpus is safe.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

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


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    add_common_arguments(parser)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    def command() -> int:
        workspace = open_workspace(args)
        result = workspace.normalize()
        print_json(
            {
                "records_changed": result.records_changed,
                "chunks": result.chunks,
                "failed_chunks": result.failed_chunks,
                "normalized": workspace.corpus.normalized,
            }
        )
        return 0

    return run_command(command)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
