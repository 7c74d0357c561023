"""
Run a Lifecycle Job
===================

CLI entry point for external cron runners.

Usage:
    python -m keyledger.scripts.run_job quota_reset
    python -m keyledger.scripts.run_job weekly_report --json

Exits 0 when the job completed (even if some items failed), 1 when the
job as a whole failed.
"""

import argparse
import json
import sys

from keyledger.config import settings
from keyledger.core.structured_logging import setup_logging
from keyledger.jobs.scheduler import JOBS, run_job
from keyledger.models.outcomes import ITEM_FAILED, JOB_FAILED


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one keyledger lifecycle job")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    parser.add_argument("--json", action="store_true", help="Print the full JobResult as JSON")
    args = parser.parse_args(argv)

    setup_logging(log_dir=settings.log_directory)
    result = run_job(args.job)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(
            f"{result.job_name}: {result.status} "
            f"(affected={result.affected}, items={len(result.items)}, failed={result.count(ITEM_FAILED)})"
        )
        if result.report is not None:
            print(f"  security score: {result.report.security_score}")
            for line in result.report.recommendations:
                print(f"  - {line}")
        if result.error:
            print(f"  error: {result.error}", file=sys.stderr)

    return 1 if result.status == JOB_FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
