#!/usr/bin/env python3
"""Abort stale in-flight multipart uploads.

Usage:
  .venv/bin/python scripts/abort_stale_uploads.py --dry-run
  .venv/bin/python scripts/abort_stale_uploads.py --prefix /docker/registry/v2/repositories --hours 24

Writers that were closed but never committed or cancelled leave their parts
behind in the bucket. Use --dry-run to preview.
"""

from __future__ import annotations

import argparse
import logging
from datetime import timedelta

from blobdriver.common.config import get_settings
from blobdriver.common.logging import setup_logging
from blobdriver.driver.driver import StorageDriver, build_driver

logger = logging.getLogger("storage.scripts")


def abort_stale_uploads(
    *,
    prefix: str = "/",
    older_than: timedelta | None = None,
    dry_run: bool = False,
    driver: StorageDriver | None = None,
) -> int:
    driver = driver or build_driver()
    uploads = driver.abort_uploads(prefix, older_than=older_than, dry_run=dry_run)
    for upload in uploads:
        logger.info(
            "%s %s (upload_id=%s, initiated=%s)",
            "would abort" if dry_run else "aborted",
            upload.object_key,
            upload.upload_id,
            upload.initiated,
        )
    return len(uploads)


def main() -> None:
    parser = argparse.ArgumentParser(description="Abort stale multipart uploads")
    parser.add_argument(
        "--prefix",
        default="/",
        help="Only consider uploads below this registry path (default: /)",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=None,
        help="Only abort uploads initiated more than N hours ago (default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the uploads that would be aborted",
    )
    args = parser.parse_args()
    setup_logging(get_settings().LOG_LEVEL)
    older_than = timedelta(hours=args.hours) if args.hours is not None else None
    count = abort_stale_uploads(
        prefix=args.prefix, older_than=older_than, dry_run=args.dry_run
    )
    if args.dry_run:
        print(f"[DRY-RUN] {count} uploads would be aborted")
    else:
        print(f"Aborted {count} uploads")


if __name__ == "__main__":
    main()
