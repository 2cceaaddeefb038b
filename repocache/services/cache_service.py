"""Shared helpers for periodic cache maintenance."""

from __future__ import annotations

import logging
import sqlite3

from ..ledger import CacheLedger
from ..models import SweepReport

logger = logging.getLogger(__name__)


def run_sweep(ledger: CacheLedger) -> SweepReport:
    """Sweep expired cache state, logging instead of raising on failure."""

    try:
        report = ledger.sweep()
    except (sqlite3.Error, OSError) as exc:
        logger.error("Cache sweep failed: %s", exc)
        return SweepReport()
    if report.total:
        logger.info(
            "Swept %d records, %d artifacts, %d patterns and %d blobs",
            report.expired_records,
            report.expired_artifacts,
            report.expired_patterns,
            report.orphaned_blobs,
        )
    return report
