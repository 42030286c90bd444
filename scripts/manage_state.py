"""Export, import, reset or summarise the review state document.

None of these commands talk to the LLM, so no API key is needed.
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
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Write a copy of the state document")
    export_parser.add_argument("path", type=Path, help="Destination JSON file")

    import_parser = subparsers.add_parser("import", help="Replace the state with an exported file")
    import_parser.add_argument("path", type=Path, help="Previously exported JSON file")

    reset_parser = subparsers.add_parser("reset", help="Delete every record and all review state")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    subparsers.add_parser("summary", help="Print counts for the current state")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    def command() -> int:
        workspace = open_workspace(args)
        if args.command == "export":
            target = workspace.export_state(args.path)
            print(f"Exported {len(workspace.corpus.records)} records to {target}")
            return 0
        if args.command == "import":
            corpus = workspace.import_state(args.path)
            print(f"Imported {len(corpus.records)} records into {workspace.state_path}")
            return 0
        if args.command == "reset":
            if not args.yes:
                print("Refusing to reset without --yes", file=sys.stderr)
                return 1
            workspace.reset()
            print(f"Reset {workspace.state_path}")
            return 0
        print_json(workspace.summary())
        return 0

    return run_command(command)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
