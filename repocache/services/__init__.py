"""Service layer for repocache: parsing, analysis, patterns, reconciliation."""
