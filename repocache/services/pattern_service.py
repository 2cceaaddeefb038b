"""Directory-level structural pattern summaries cached in the PatternLedger."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ..models import FileMetadata, FileType
from ..patterns import PatternLedger

logger = logging.getLogger(__name__)

TOP_N = 10
_VERB = re.compile(r"^[a-z]+")


@dataclass(slots=True)
class DirectoryPatterns:
    """Aggregated conventions observed across the files of one directory."""

    directory: str
    file_count: int = 0
    file_types: dict[str, int] = field(default_factory=dict)
    page_objects: list[str] = field(default_factory=list)
    tests: list[str] = field(default_factory=list)
    top_imports: list[str] = field(default_factory=list)
    top_annotations: list[str] = field(default_factory=list)
    method_verbs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "directory": self.directory,
            "file_count": self.file_count,
            "file_types": dict(self.file_types),
            "page_objects": list(self.page_objects),
            "tests": list(self.tests),
            "top_imports": list(self.top_imports),
            "top_annotations": list(self.top_annotations),
            "method_verbs": list(self.method_verbs),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DirectoryPatterns":
        return cls(
            directory=str(payload.get("directory") or ""),
            file_count=int(payload.get("file_count") or 0),
            file_types={str(k): int(v) for k, v in (payload.get("file_types") or {}).items()},
            page_objects=list(payload.get("page_objects") or ()),
            tests=list(payload.get("tests") or ()),
            top_imports=list(payload.get("top_imports") or ()),
            top_annotations=list(payload.get("top_annotations") or ()),
            method_verbs=list(payload.get("method_verbs") or ()),
        )


def _top(counter: Counter[str], limit: int = TOP_N) -> list[str]:
    return [name for name, _ in sorted(counter.items(), key=lambda item: (-item[1], item[0]))[:limit]]


def aggregate_patterns(directory: str, files: Iterable[FileMetadata]) -> DirectoryPatterns:
    """Summarize *files* (all in *directory*) into a :class:`DirectoryPatterns`."""

    file_types: Counter[str] = Counter()
    imports: Counter[str] = Counter()
    annotations: Counter[str] = Counter()
    verbs: Counter[str] = Counter()
    page_objects: list[str] = []
    tests: list[str] = []
    count = 0
    for metadata in files:
        count += 1
        file_types[metadata.file_type.value] += 1
        label = metadata.class_name or ""
        if metadata.file_type is FileType.PAGE_OBJECT and label:
            page_objects.append(label)
        if metadata.is_test and label:
            tests.append(label)
        imports.update(set(metadata.imports))
        annotations.update(set(metadata.annotations))
        for method in metadata.methods:
            match = _VERB.match(method.name)
            if match:
                verbs[match.group(0)] += 1
    return DirectoryPatterns(
        directory=directory,
        file_count=count,
        file_types=dict(sorted(file_types.items())),
        page_objects=sorted(page_objects),
        tests=sorted(tests),
        top_imports=_top(imports),
        top_annotations=_top(annotations),
        method_verbs=_top(verbs),
    )


class PatternService:
    """Read-through cache of :class:`DirectoryPatterns` keyed by directory."""

    def __init__(self, ledger: PatternLedger) -> None:
        self.ledger = ledger

    def cached(self, directory_key: str) -> DirectoryPatterns | None:
        payload = self.ledger.get(directory_key)
        if payload is None:
            return None
        try:
            return DirectoryPatterns.from_dict(payload)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring malformed pattern cache for %s: %s", directory_key, exc)
            return None

    def store(self, directory_key: str, patterns: DirectoryPatterns) -> bool:
        result = self.ledger.put(directory_key, patterns.to_dict(), patterns.file_count)
        return result.ok

    def refresh(self, directory_key: str, files: Iterable[FileMetadata]) -> DirectoryPatterns:
        patterns = aggregate_patterns(directory_key, files)
        self.store(directory_key, patterns)
        return patterns
