#!/usr/bin/env python3
"""Merge duplicate room stages and retire legacy DESIGN stages (idempotent)."""

import argparse
import os
import sys

sys.path.insert(0, ".")

from roomflow import create_app
from roomflow.services.stage_merger import run_duplicate_stage_cleanup


def merge_duplicate_stages(*, apply: bool = False, org_id: int | None = None) -> dict:
    """Run the cleanup and print one line per group plus a summary."""
    report = run_duplicate_stage_cleanup(org_id, apply=apply)

    print(
        f"[INFO] mode={report['mode']} rooms={report['rooms_scanned']} "
        f"groups={report['groups_found']}"
    )

    tag = "MERGE" if apply else "PLAN"
    for merge in report["merges"]:
        print(
            f"[{tag}] room_id={merge['room_id']} type={merge['stage_type']} "
            f"keep={merge['survivor_id']} remove={','.join(merge['removed_stage_ids']) or '-'} "
            f"sections={merge['sections_reassigned']}"
        )
    for conflict in report["conflicts"]:
        print(
            f"[CONFLICT] room_id={conflict['room_id']} type={conflict['stage_type']} "
            f"active={','.join(conflict['active_ids'])}"
        )

    print(
        "[SUMMARY] "
        f"mode={report['mode']} "
        f"groups={report['groups_found']} "
        f"removed={report['stages_removed']} "
        f"sections={report['sections_reassigned']} "
        f"conflicts={len(report['conflicts'])} "
        f"index={'installed' if report['unique_index_installed'] else 'skipped'}"
    )
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Merge duplicate room stages and retire legacy DESIGN stages (idempotent)."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist merges")
    parser.add_argument("--org-id", type=int, default=None, help="Limit to one organisation")
    args = parser.parse_args(argv)

    apply = bool(args.apply)
    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app(os.getenv("APP_ENV", "development"))
    with app.app_context():
        report = merge_duplicate_stages(apply=apply, org_id=args.org_id)

    if apply and report["conflicts"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
