#!/usr/bin/env python3
"""Run one snapshot + settlement pass and exit.

Intended to be run from a scheduler (e.g., Render Cron) instead of the
snapshot_worker loop. Exits non-zero when the pass failed.
"""

import sys

from app import app
from snapshot_worker import run_pipeline


def main():
    with app.app_context():
        result = run_pipeline("cron")
    print(result)
    # A run skipped because another holds the lock is not a failure.
    return 0 if result.get("ok") or result.get("skipped") == "locked" else 1


if __name__ == "__main__":
    sys.exit(main())
