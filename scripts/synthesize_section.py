"""Write a bulleted summary and contradiction analysis for review sections.

With ``--category`` one section (a category, or one of its themes) is
synthesised and printed.  With ``--all`` every theme of every category is
synthesised in alphabetical order and combined into one Markdown document.

Usage
-----
```bash
python scripts/synthesize_section.py --category "Heat Stress" --theme Hatching
python scripts/synthesize_section.py --all --output reports/synthesis.md
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
    run_command,
)
from litreview_pipeline.synthesis import render_review, render_synthesis
from litreview_pipeline.workspace import ReviewWorkspace


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    add_common_arguments(parser)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--category", help="Category (manuscript section)")
    target.add_argument("--all", action="store_true", help="Synthesise every section into one document")
    parser.add_argument("--theme", help="Restrict the synthesis to one theme of the category")
    parser.add_argument("--output", type=Path, help="Also write the synthesis to this file")
    return parser


def _synthesize_all(workspace: ReviewWorkspace) -> tuple[int, str | None]:
    if not workspace.corpus.records:
        print("The review has no records to synthesise.", file=sys.stderr)
        return 1, None
    review = workspace.synthesize_all()
    if not review.sections:
        print("The LLM did not return a synthesis for any section; try again later.", file=sys.stderr)
        return 1, None
    for category, theme in review.failed:
        print(f"No synthesis for {category} / {theme}", file=sys.stderr)
    return 0, render_review(review)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    if args.all and args.theme:
        parser.error("--theme only applies together with --category")

    def command() -> int:
        workspace = open_workspace(args)
        if args.all:
            code, text = _synthesize_all(workspace)
            if text is None:
                return code
        else:
            synthesis = workspace.synthesize(args.category, args.theme)
            if synthesis is None:
                print("The LLM did not return a synthesis; try again later.", file=sys.stderr)
                return 1
            text = render_synthesis(synthesis)
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(text + "\n", encoding="utf-8")
        print(text)
        return 0

    return run_command(command)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
