"""Tree-sitter based parser and structural analyzer for Java sources."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Protocol

from ..errors import UpstreamError
from ..models import FileMetadata, FileType, MethodSignature, WebElement
from ..text import Messages

logger = logging.getLogger(__name__)

TYPE_DECLARATIONS = frozenset(
    {
        "class_declaration",
        "interface_declaration",
        "enum_declaration",
        "record_declaration",
        "annotation_type_declaration",
    }
)
ANNOTATION_NODES = frozenset({"annotation", "marker_annotation"})
PAGE_OBJECT_DIRS = ("pages/", "pageobjects/")
TEST_IMPORT_MARKERS = ("junit", "testng")
ELEMENT_MARKERS = ("WebElement", "@FindBy")
_KEYWORD = re.compile(r"[a-z][a-z-]*")

SyntaxTree = dict[str, Any]


class SourceParser(Protocol):
    """Parser boundary: bytes in, serializable tree out, metadata from the tree."""

    def parse(self, source: bytes) -> SyntaxTree:
        raise NotImplementedError  # pragma: no cover

    def analyze(self, tree: SyntaxTree, source: bytes, rel_path: str) -> FileMetadata:
        raise NotImplementedError  # pragma: no cover


def _get_java_parser():
    """Return a configured tree-sitter parser for Java."""
    try:
        from tree_sitter import Language, Parser
        import tree_sitter_java as ts_java
    except ImportError as exc:
        raise UpstreamError(Messages.ERROR_PARSER_MISSING) from exc
    return Parser(Language(ts_java.language()))


def _entry(node, field: str | None) -> SyntaxTree:
    entry: SyntaxTree = {
        "type": node.type,
        "start_byte": node.start_byte,
        "end_byte": node.end_byte,
        "start_point": [node.start_point[0], node.start_point[1]],
        "end_point": [node.end_point[0], node.end_point[1]],
        "children": [],
    }
    if field:
        entry["field"] = field
    return entry


def serialize_node(root) -> SyntaxTree:
    """Convert a tree-sitter node into nested dicts of its named descendants."""

    root_entry = _entry(root, None)
    stack = [(root, root_entry)]
    while stack:
        node, entry = stack.pop()
        for index in range(node.child_count):
            child = node.child(index)
            if child is None or not child.is_named:
                continue
            child_entry = _entry(child, node.field_name_for_child(index))
            entry["children"].append(child_entry)
            stack.append((child, child_entry))
    return root_entry


def _text(node: Mapping[str, Any], source: bytes) -> str:
    return source[node["start_byte"] : node["end_byte"]].decode("utf-8", errors="replace")


def _squash(text: str) -> str:
    return " ".join(text.split())


def _child_by_field(node: Mapping[str, Any], field: str) -> Mapping[str, Any] | None:
    for child in node.get("children") or ():
        if child.get("field") == field:
            return child
    return None


def _children_of_type(node: Mapping[str, Any], *types: str) -> list[Mapping[str, Any]]:
    return [child for child in node.get("children") or () if child.get("type") in types]


def _annotation_name(node: Mapping[str, Any], source: bytes) -> str:
    name = _child_by_field(node, "name")
    if name is not None:
        return _text(name, source)
    return _text(node, source).lstrip("@").split("(", 1)[0].strip()


def _modifiers(node: Mapping[str, Any], source: bytes) -> tuple[tuple[str, ...], list[Mapping[str, Any]]]:
    """Return ``(keywords, annotation_nodes)`` for a declaration's modifiers."""

    found = _children_of_type(node, "modifiers")
    if not found:
        return (), []
    modifiers = found[0]
    annotations = _children_of_type(modifiers, *ANNOTATION_NODES)
    pieces: list[bytes] = []
    cursor = modifiers["start_byte"]
    for annotation in sorted(annotations, key=lambda item: item["start_byte"]):
        pieces.append(source[cursor : annotation["start_byte"]])
        cursor = annotation["end_byte"]
    pieces.append(source[cursor : modifiers["end_byte"]])
    text = b" ".join(pieces).decode("utf-8", errors="replace")
    keywords = tuple(word for word in text.split() if _KEYWORD.fullmatch(word))
    return keywords, annotations


class JavaSourceParser:
    """Parse Java with tree-sitter and extract class-level structure."""

    def __init__(self) -> None:
        self._parser = _get_java_parser()

    def parse(self, source: bytes) -> SyntaxTree:
        try:
            tree = self._parser.parse(source)
        except Exception as exc:
            raise UpstreamError(Messages.ERROR_PARSE_FAILED.format(path="<source>", reason=exc)) from exc
        root = tree.root_node
        serialized = serialize_node(root)
        if root.has_error:
            serialized["has_error"] = True
        return serialized

    def analyze(self, tree: SyntaxTree, source: bytes, rel_path: str) -> FileMetadata:
        return analyze_tree(tree, source, rel_path)


def analyze_tree(tree: Mapping[str, Any], source: bytes, rel_path: str) -> FileMetadata:
    """Extract :class:`FileMetadata` from a serialized Java syntax tree."""

    metadata = FileMetadata()
    primary: Mapping[str, Any] | None = None
    annotations: list[str] = []

    for node in tree.get("children") or ():
        node_type = node.get("type")
        if node_type == "package_declaration":
            names = [
                child
                for child in node.get("children") or ()
                if child.get("type") in ("scoped_identifier", "identifier")
            ]
            if names:
                metadata.package_name = _text(names[0], source)
        elif node_type == "import_declaration":
            text = _squash(_text(node, source))
            if text.startswith("import"):
                text = text[len("import") :]
            metadata.imports.append(text.strip().rstrip(";").strip())
        elif node_type in TYPE_DECLARATIONS and primary is None:
            primary = node

    if primary is not None:
        name = _child_by_field(primary, "name")
        metadata.class_name = _text(name, source) if name is not None else None
        _, class_annotations = _modifiers(primary, source)
        annotations.extend(_annotation_name(item, source) for item in class_annotations)
        body = _child_by_field(primary, "body")
        if body is not None:
            for member in _children_of_type(body, "method_declaration"):
                method = _method_signature(member, source)
                metadata.methods.append(method)
                annotations.extend(method.annotations)

    class_name = metadata.class_name or ""
    lowered_path = rel_path.replace("\\", "/").lower()
    metadata.is_page_object = (
        "Page" in class_name
        or "Screen" in class_name
        or any(marker in f"/{lowered_path}" for marker in (f"/{d}" for d in PAGE_OBJECT_DIRS))
    )
    metadata.is_test = (
        "Test" in class_name
        or any(
            marker in imported.lower()
            for imported in metadata.imports
            for marker in TEST_IMPORT_MARKERS
        )
        or "Test" in annotations
    )
    if metadata.is_page_object and primary is not None:
        body = _child_by_field(primary, "body")
        if body is not None:
            metadata.elements = _web_elements(body, source)
            for element in metadata.elements:
                if element.locator is not None:
                    annotations.append("FindBy")

    if metadata.is_test:
        metadata.file_type = FileType.TEST
    elif metadata.is_page_object:
        metadata.file_type = FileType.PAGE_OBJECT
    elif "Util" in class_name or "Helper" in class_name:
        metadata.file_type = FileType.UTILITY
    else:
        metadata.file_type = FileType.OTHER

    metadata.annotations = list(dict.fromkeys(item for item in annotations if item))
    if tree.get("has_error"):
        logger.debug("Syntax errors while analyzing %s; metadata may be partial", rel_path)
    return metadata


def _method_signature(node: Mapping[str, Any], source: bytes) -> MethodSignature:
    name_node = _child_by_field(node, "name")
    type_node = _child_by_field(node, "type")
    params_node = _child_by_field(node, "parameters")
    body = _child_by_field(node, "body")
    keywords, annotation_nodes = _modifiers(node, source)

    start = node["start_byte"]
    if annotation_nodes:
        start = max(item["end_byte"] for item in annotation_nodes)
    end = body["start_byte"] if body is not None else node["end_byte"]
    signature = _squash(source[start:end].decode("utf-8", errors="replace")).rstrip(";").strip()

    parameters: tuple[str, ...] = ()
    if params_node is not None:
        parameters = tuple(
            _squash(_text(param, source))
            for param in _children_of_type(params_node, "formal_parameter", "spread_parameter")
        )
    return MethodSignature(
        name=_text(name_node, source) if name_node is not None else "",
        signature=signature,
        modifiers=keywords,
        return_type=_text(type_node, source) if type_node is not None else None,
        parameters=parameters,
        annotations=tuple(_annotation_name(item, source) for item in annotation_nodes),
    )


def _web_elements(body: Mapping[str, Any], source: bytes) -> list[WebElement]:
    elements: list[WebElement] = []
    for field in _children_of_type(body, "field_declaration"):
        declaration = _squash(_text(field, source))
        if not any(marker in declaration for marker in ELEMENT_MARKERS):
            continue
        _, annotation_nodes = _modifiers(field, source)
        locator = None
        for annotation in annotation_nodes:
            if _annotation_name(annotation, source) == "FindBy":
                arguments = _child_by_field(annotation, "arguments")
                locator = _squash(_text(arguments, source)).strip("()") if arguments else ""
        for declarator in _children_of_type(field, "variable_declarator"):
            name = _child_by_field(declarator, "name")
            if name is None:
                continue
            elements.append(
                WebElement(name=_text(name, source), declaration=declaration, locator=locator)
            )
    return elements


def prepare_document_text(metadata: FileMetadata) -> str:
    """Compose the text embedded for a file: class, package, type, signatures, elements."""

    parts = [
        f"class {metadata.class_name}" if metadata.class_name else "",
        f"package {metadata.package_name}" if metadata.package_name else "",
        metadata.file_type.value,
        *(method.signature for method in metadata.methods),
        *(element.name for element in metadata.elements),
    ]
    return " ".join(part for part in parts if part)
