"""Typed records passed between the ledger, the parser and the reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ArtifactKind(str, Enum):
    AST = "ast"
    METADATA = "metadata"
    EMBEDDING = "embedding"


class FileType(str, Enum):
    TEST = "test"
    PAGE_OBJECT = "pageObject"
    UTILITY = "utility"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class MethodSignature:
    name: str
    signature: str
    modifiers: tuple[str, ...] = ()
    return_type: str | None = None
    parameters: tuple[str, ...] = ()
    annotations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "signature": self.signature,
            "modifiers": list(self.modifiers),
            "return_type": self.return_type,
            "parameters": list(self.parameters),
            "annotations": list(self.annotations),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MethodSignature":
        return cls(
            name=str(payload.get("name") or ""),
            signature=str(payload.get("signature") or ""),
            modifiers=tuple(payload.get("modifiers") or ()),
            return_type=payload.get("return_type"),
            parameters=tuple(payload.get("parameters") or ()),
            annotations=tuple(payload.get("annotations") or ()),
        )


@dataclass(frozen=True, slots=True)
class WebElement:
    """A UI element field declared on a page object."""

    name: str
    declaration: str
    locator: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "declaration": self.declaration, "locator": self.locator}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WebElement":
        return cls(
            name=str(payload.get("name") or ""),
            declaration=str(payload.get("declaration") or ""),
            locator=payload.get("locator"),
        )


@dataclass(slots=True)
class FileMetadata:
    """Structural facts extracted from one source file."""

    class_name: str | None = None
    package_name: str | None = None
    file_type: FileType = FileType.OTHER
    is_page_object: bool = False
    is_test: bool = False
    methods: list[MethodSignature] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    annotations: list[str] = field(default_factory=list)
    elements: list[WebElement] = field(default_factory=list)

    @property
    def method_names(self) -> list[str]:
        return [method.name for method in self.methods]

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_name": self.class_name,
            "package_name": self.package_name,
            "file_type": self.file_type.value,
            "is_page_object": self.is_page_object,
            "is_test": self.is_test,
            "methods": [method.to_dict() for method in self.methods],
            "imports": list(self.imports),
            "annotations": list(self.annotations),
            "elements": [element.to_dict() for element in self.elements],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FileMetadata":
        try:
            file_type = FileType(payload.get("file_type") or FileType.OTHER.value)
        except ValueError:
            file_type = FileType.OTHER
        return cls(
            class_name=payload.get("class_name"),
            package_name=payload.get("package_name"),
            file_type=file_type,
            is_page_object=bool(payload.get("is_page_object")),
            is_test=bool(payload.get("is_test")),
            methods=[MethodSignature.from_dict(item) for item in payload.get("methods") or ()],
            imports=[str(item) for item in payload.get("imports") or ()],
            annotations=[str(item) for item in payload.get("annotations") or ()],
            elements=[WebElement.from_dict(item) for item in payload.get("elements") or ()],
        )


@dataclass(frozen=True, slots=True)
class EmbeddingRef:
    embedding_id: str
    dimension: int
    model_version: str


@dataclass(frozen=True, slots=True)
class WriteResult:
    ok: bool
    path: str
    kind: str
    content_hash: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SweepReport:
    expired_records: int = 0
    expired_artifacts: int = 0
    expired_patterns: int = 0
    orphaned_blobs: int = 0

    @property
    def total(self) -> int:
        return (
            self.expired_records
            + self.expired_artifacts
            + self.expired_patterns
            + self.orphaned_blobs
        )


@dataclass(frozen=True, slots=True)
class CacheStats:
    file_records: int = 0
    ast_artifacts: int = 0
    metadata_artifacts: int = 0
    embedding_artifacts: int = 0
    pattern_records: int = 0
    blobs: int = 0
    recent_write_rate: float = 0.0

    def as_rows(self) -> list[tuple[str, str]]:
        return [
            ("file records", str(self.file_records)),
            ("ast artifacts", str(self.ast_artifacts)),
            ("metadata artifacts", str(self.metadata_artifacts)),
            ("embedding artifacts", str(self.embedding_artifacts)),
            ("pattern records", str(self.pattern_records)),
            ("blobs", str(self.blobs)),
            ("written in last hour", f"{self.recent_write_rate:.0%}"),
        ]
