from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from backend.app.services.markdown_tokens import Token, strip_html, tokenize_markdown

SUPPORTED_TAGS: frozenset[str] = frozenset(
    {
        "p",
        "b",
        "i",
        "s",
        "code",
        "a",
        "img",
        "video",
        "iframe",
        "figure",
        "figcaption",
        "h3",
        "h4",
        "blockquote",
        "ol",
        "ul",
        "li",
        "br",
        "hr",
        "pre",
    }
)
BLOCK_TAGS: frozenset[str] = frozenset(
    {"p", "h3", "h4", "blockquote", "ol", "ul", "hr", "pre", "figure"}
)
_ALLOWED_ATTRS: tuple[str, ...] = ("href", "src")
_HTML_MEDIA_PREFIXES: tuple[tuple[str, str], ...] = (
    ("<img", "img"),
    ("<video", "video"),
    ("<iframe", "iframe"),
)
_HTML_SRC_RE = re.compile(r"""src\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_HTML_BOLD_RE = re.compile(r"<(?:b|strong)[\s>]", re.IGNORECASE)
_HTML_ITALIC_RE = re.compile(r"<(?:i|em)[\s>]", re.IGNORECASE)
_WORD_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class RichElement:
    tag: str
    attrs: dict[str, str] | None = None
    children: tuple[RichNode, ...] = field(default_factory=tuple)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"tag": self.tag}
        if self.attrs:
            payload["attrs"] = dict(self.attrs)
        if self.children:
            payload["children"] = nodes_to_json(self.children)
        return payload


RichNode: TypeAlias = "str | RichElement"


def markdown_to_nodes(markdown_text: str) -> list[RichNode]:
    """
    Convert Markdown into a Telegra.ph node tree.

    Pure: equal input gives equal trees. Never raises for any string input;
    unrecognized constructs fall back to their raw text or are dropped.
    """
    return group_inline_nodes(convert_tokens(tokenize_markdown(markdown_text)))


def convert_tokens(tokens: Iterable[Token]) -> list[RichNode]:
    nodes: list[RichNode] = []
    for token in tokens:
        nodes.extend(convert_token(token))
    return [node for node in nodes if node != ""]


def convert_token(token: Token) -> list[RichNode]:
    kind = token.kind
    if kind in {"text", "escape"}:
        if token.children:
            return convert_tokens(token.children)
        return [token.text] if token.text else []
    if kind == "strong":
        return [RichElement("b", children=tuple(convert_tokens(token.children)))]
    if kind == "em":
        return [RichElement("i", children=tuple(convert_tokens(token.children)))]
    if kind == "del":
        return [RichElement("s", children=tuple(convert_tokens(token.children)))]
    if kind == "codespan":
        return [RichElement("code", children=(token.text,) if token.text else ())]
    if kind == "link":
        return [
            RichElement(
                "a",
                attrs={"href": token.href or ""},
                children=tuple(convert_tokens(token.children)),
            )
        ]
    if kind == "image":
        return [_image_node(token.href or "", alt=token.text, title=token.title)]
    if kind == "br":
        return [RichElement("br")]
    if kind == "space":
        return []
    if kind == "hr":
        return [RichElement("hr")]
    if kind == "paragraph":
        return [RichElement("p", children=tuple(convert_tokens(token.children)))]
    if kind == "heading":
        tag = "h3" if token.depth <= 2 else "h4"
        return [RichElement(tag, children=tuple(convert_tokens(token.children)))]
    if kind == "list":
        items: list[RichNode] = []
        for item in token.children:
            items.extend(convert_token(item))
        return [RichElement("ol" if token.ordered else "ul", children=tuple(items))]
    if kind == "list_item":
        return [_list_item_node(token)]
    if kind == "blockquote":
        return [_blockquote_node(token)]
    if kind == "code":
        return [_preformatted(token.text)]
    if kind == "table":
        return [_preformatted(render_ascii_table(token.header, token.rows))]
    if kind == "html":
        return _html_nodes(token.text)
    return [token.text] if token.text else []


def group_inline_nodes(nodes: Sequence[RichNode]) -> list[RichNode]:
    """Wrap each run of consecutive inline nodes in a single paragraph."""
    grouped: list[RichNode] = []
    pending: list[RichNode] = []
    for node in nodes:
        if isinstance(node, RichElement) and node.tag in BLOCK_TAGS:
            if pending:
                grouped.append(RichElement("p", children=tuple(pending)))
                pending = []
            grouped.append(node)
        else:
            pending.append(node)
    if pending:
        grouped.append(RichElement("p", children=tuple(pending)))
    return grouped


def render_ascii_table(header: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(cell) for cell in header]
    normalized_rows: list[list[str]] = []
    for row in rows:
        cells = [row[index] if index < len(row) else "" for index in range(len(header))]
        normalized_rows.append(cells)
        for index, cell in enumerate(cells):
            widths[index] = max(widths[index], len(cell))

    def format_row(cells: Sequence[str]) -> str:
        padded = [cell.ljust(widths[index]) for index, cell in enumerate(cells)]
        return "| " + " | ".join(padded) + " |\n"

    separator = "|-" + "-|-".join("-" * width for width in widths) + "-|\n"
    return format_row(header) + separator + "".join(format_row(row) for row in normalized_rows)


def drop_duplicate_title_heading(title: str, nodes: Sequence[RichNode]) -> list[RichNode]:
    if not nodes:
        return []
    first = nodes[0]
    if not isinstance(first, RichElement) or first.tag not in {"h3", "h4"}:
        return list(nodes)
    heading_words = _title_words(node_text(first))
    title_words = _title_words(title)
    shorter, longer = sorted((heading_words, title_words), key=len)
    # "My Title" matches "My Title - Some Blog"; "Go" does not match "Going further".
    if shorter and longer[: len(shorter)] == shorter:
        return list(nodes[1:])
    return list(nodes)


def node_text(node: RichNode) -> str:
    if isinstance(node, str):
        return node
    return "".join(node_text(child) for child in node.children)


def node_tags(nodes: Iterable[RichNode]) -> set[str]:
    tags: set[str] = set()
    for node in nodes:
        if isinstance(node, RichElement):
            tags.add(node.tag)
            tags.update(node_tags(node.children))
    return tags


def nodes_to_json(nodes: Iterable[RichNode]) -> list[Any]:
    return [node if isinstance(node, str) else node.to_json() for node in nodes]


def nodes_from_json(data: object) -> list[RichNode]:
    if not isinstance(data, list):
        return []
    nodes: list[RichNode] = []
    for item in data:
        node = _node_from_json(item)
        if node is not None:
            nodes.append(node)
    return nodes


def serialize_nodes(nodes: Iterable[RichNode]) -> str:
    return json.dumps(nodes_to_json(nodes), ensure_ascii=False, separators=(",", ":"))


def _node_from_json(item: object) -> RichNode | None:
    if isinstance(item, str):
        return item
    if not isinstance(item, dict):
        return None
    tag = item.get("tag")
    if not isinstance(tag, str) or not tag:
        return None
    raw_attrs = item.get("attrs")
    attrs: dict[str, str] | None = None
    if isinstance(raw_attrs, dict):
        attrs = {
            key: value
            for key, value in raw_attrs.items()
            if key in _ALLOWED_ATTRS and isinstance(value, str)
        } or None
    return RichElement(tag, attrs=attrs, children=tuple(nodes_from_json(item.get("children"))))


def _image_node(src: str, *, alt: str, title: str | None) -> RichElement:
    image = RichElement("img", attrs={"src": src})
    caption = title or alt
    if not caption:
        return image
    return RichElement("figure", children=(image, RichElement("figcaption", children=(caption,))))


def _list_item_node(token: Token) -> RichElement:
    children = convert_tokens(token.children)
    if token.task:
        children.insert(0, "[x] " if token.checked else "[ ] ")
    unwrapped: list[RichNode] = []
    for child in children:
        if isinstance(child, RichElement) and child.tag == "p":
            unwrapped.extend(child.children)
        else:
            unwrapped.append(child)
    return RichElement("li", children=tuple(unwrapped))


def _blockquote_node(token: Token) -> RichElement:
    unwrapped: list[RichNode] = []
    for child in convert_tokens(token.children):
        if isinstance(child, RichElement) and child.tag == "p":
            unwrapped.extend(child.children)
            unwrapped.append(RichElement("br"))
        else:
            unwrapped.append(child)
    if unwrapped and isinstance(unwrapped[-1], RichElement) and unwrapped[-1].tag == "br":
        unwrapped.pop()
    return RichElement("blockquote", children=tuple(unwrapped))


def _preformatted(text: str) -> RichElement:
    return RichElement("pre", children=(RichElement("code", children=(text,) if text else ()),))


def _html_nodes(raw: str) -> list[RichNode]:
    fragment = raw.strip()
    lowered = fragment.lower()
    for prefix, tag in _HTML_MEDIA_PREFIXES:
        if lowered.startswith(prefix):
            match = _HTML_SRC_RE.search(fragment)
            if match is not None:
                return [RichElement(tag, attrs={"src": match.group(1)})]

    text = strip_html(fragment)
    if not text:
        return []
    if _HTML_BOLD_RE.search(fragment):
        return [RichElement("b", children=(text,))]
    if _HTML_ITALIC_RE.search(fragment):
        return [RichElement("i", children=(text,))]
    return [text]


def _title_words(value: str) -> tuple[str, ...]:
    return tuple(word.lower() for word in _WORD_RE.findall(value))
