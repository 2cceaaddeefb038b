"""Per-file parse and extract pipeline that consults the cache ledger first."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import RepoCacheError, UpstreamError
from ..identity import FileIdentity, read_with_identity
from ..ledger import CacheLedger
from ..models import ArtifactKind, FileMetadata
from ..text import Messages
from .java_parser import SourceParser, prepare_document_text

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FileAnalysis:
    rel_path: str
    identity: FileIdentity
    metadata: FileMetadata
    document: str
    parsed: bool = False
    analyzed: bool = False


class FileAnalyzer:
    """Turn a source file into metadata and document text, reusing cached work.

    Lookup order: cached metadata, then cached syntax tree, then a fresh parse.
    Everything computed here is written back to the ledger against the exact
    identity of the bytes that produced it.
    """

    def __init__(self, parser: SourceParser, ledger: CacheLedger | None = None) -> None:
        self.parser = parser
        self.ledger = ledger

    def analyze(self, path: Path, rel_path: str) -> FileAnalysis:
        data, identity = read_with_identity(path)
        ledger = self.ledger
        if ledger is not None:
            cached = ledger.get(identity.path, ArtifactKind.METADATA, identity=identity)
            if cached is not None:
                logger.debug("Metadata cache hit for %s", rel_path)
                return FileAnalysis(
                    rel_path=rel_path,
                    identity=identity,
                    metadata=cached,
                    document=prepare_document_text(cached),
                )

        parsed = False
        tree = None
        if ledger is not None:
            tree = ledger.get(identity.path, ArtifactKind.AST, identity=identity)
        if tree is None:
            tree = self.parser.parse(data)
            parsed = True
            if ledger is not None:
                ledger.put(identity.path, ArtifactKind.AST, tree, identity=identity)

        try:
            metadata = self.parser.analyze(tree, data, rel_path)
        except RepoCacheError:
            raise
        except Exception as exc:
            raise UpstreamError(
                Messages.ERROR_PARSE_FAILED.format(path=rel_path, reason=exc)
            ) from exc
        if ledger is not None:
            ledger.put(identity.path, ArtifactKind.METADATA, metadata, identity=identity)
        return FileAnalysis(
            rel_path=rel_path,
            identity=identity,
            metadata=metadata,
            document=prepare_document_text(metadata),
            parsed=parsed,
            analyzed=True,
        )
