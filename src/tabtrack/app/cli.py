from __future__ import annotations

import argparse
import sys

from tabtrack.app.runner import report, run
from tabtrack.features.search_analytics.service import EXPORT_FORMATS


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tabtrack")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Replay the configured visitor journey")
    p_run.add_argument("--config", default="config/telemetry.yaml")

    p_report = sub.add_parser("report", help="Print search analytics for a run")
    p_report.add_argument("--config", default="config/telemetry.yaml")
    p_report.add_argument("--user", default=None, help="include a per-user summary (json only)")
    p_report.add_argument("--format", dest="fmt", choices=EXPORT_FORMATS, default="json")
    p_report.add_argument("--since", default=None, help="ISO date/datetime, inclusive")
    p_report.add_argument("--until", default=None, help="ISO date/datetime, inclusive")
    p_report.add_argument(
        "--detect-issues",
        action="store_true",
        help="record quality issues for the period before reporting",
    )

    args = parser.parse_args(argv)

    if args.cmd == "run":
        result = run(args.config)
        # minimal stdout signal
        print(
            f"run_id={result.ctx.run_id} duckdb={result.duckdb_path} "
            f"steps={result.steps_run} session_id={result.session_id}"
        )
        return 0

    if args.cmd == "report":
        out = report(
            args.config,
            user_id=args.user,
            fmt=args.fmt,
            since=args.since,
            until=args.until,
            detect_issues=args.detect_issues,
        )
        sys.stdout.write(out if out.endswith("\n") else out + "\n")
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
