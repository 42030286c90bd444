"""Review and apply structural changes to the category -> theme taxonomy.

``generate`` asks the LLM for theme merges, theme moves, category merges and
category renames, keeping only proposals that respect your locks and that you
have not rejected before.  The pending list is stored in the review state
document, so decisions can be taken one command at a time.

Usage
-----
```bash
python scripts/consolidate_taxonomy.py generate
python scripts/consolidate_taxonomy.py list
python scripts/consolidate_taxonomy.py accept p1
python scripts/consolidate_taxonomy.py reject p2
python scripts/consolidate_taxonomy.py verify p3
python scripts/consolidate_taxonomy.py reverse p4
python scripts/consolidate_taxonomy.py rename "Old name" "New name"
python scripts/consolidate_taxonomy.py lock "Category" [--theme "Theme"]
```
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
from litreview_pipeline.models import Proposal


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    add_common_arguments(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("generate", help="Request a fresh list of proposals")
    subparsers.add_parser("list", help="Show pending proposals")
    for name, help_text in (
        ("accept", "Apply a pending proposal"),
        ("reject", "Discard a proposal and never propose it again"),
        ("verify", "Re-check a theme move against more titles"),
        ("reverse", "Flip a category merge or turn a move into the opposite merge"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("proposal_id", help="Proposal id as shown by 'list'")

    rename = subparsers.add_parser("rename", help="Rename a category directly")
    rename.add_argument("old", help="Current category name")
    rename.add_argument("new", help="New category name")

    for name, help_text in (
        ("lock", "Exclude a category or theme from future proposals"),
        ("unlock", "Remove a lock"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("category", help="Category name")
        sub.add_argument("--theme", help="Lock only this theme of the category")
    return parser


def _proposal_row(proposal: Proposal) -> dict:
    return {
        "id": proposal.id,
        "kind": proposal.kind,
        "change": proposal.describe(),
        "reason": proposal.reason,
        "verified": proposal.verified,
    }


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    def command() -> int:
        workspace = open_workspace(args)
        if args.command == "generate":
            result = workspace.generate_proposals()
            print_json(
                {
                    "proposals": [_proposal_row(proposal) for proposal in result.proposals],
                    "discarded": result.discarded,
                    "failed": result.failed,
                }
            )
            return 1 if result.failed else 0
        if args.command == "list":
            print_json([_proposal_row(proposal) for proposal in workspace.pending_proposals()])
            return 0
        if args.command == "accept":
            accepted = workspace.accept(args.proposal_id)
            print_json(
                {
                    "accepted": _proposal_row(accepted.proposal),
                    "records_changed": accepted.records_changed,
                    "dropped": accepted.dropped,
                }
            )
            return 0
        if args.command == "reject":
            print_json({"rejected": _proposal_row(workspace.reject(args.proposal_id))})
            return 0
        if args.command == "verify":
            verdict = workspace.verify(args.proposal_id)
            status = {True: "verified", False: "discarded", None: "unchanged"}[verdict]
            print_json({"proposal_id": args.proposal_id, "result": status})
            return 0
        if args.command == "reverse":
            print_json({"reversed": _proposal_row(workspace.reverse(args.proposal_id))})
            return 0
        if args.command == "rename":
            renamed = workspace.rename_category(args.old, args.new)
            print_json({"records_changed": renamed.records_changed, "dropped": renamed.dropped})
            return 0
        if args.command == "lock":
            dropped = workspace.lock(args.category, args.theme)
            print_json({"locks": workspace.corpus.locks.describe(), "dropped": dropped})
            return 0
        removed = workspace.unlock(args.category, args.theme)
        print_json({"locks": workspace.corpus.locks.describe(), "removed": removed})
        return 0

    return run_command(command)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
