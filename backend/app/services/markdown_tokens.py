from __future__ import annotations

import html
import logging
import re
import xml.etree.ElementTree as etree
from dataclasses import dataclass, replace
from typing import Literal

import markdown
from markdown import util
from markdown.extensions import Extension
from markdown.inlinepatterns import SimpleTagInlineProcessor
from markdown.preprocessors import Preprocessor
from markdown.treeprocessors import Treeprocessor

LOGGER = logging.getLogger("link_saver.markdown")

TokenKind = Literal[
    "text",
    "escape",
    "strong",
    "em",
    "del",
    "codespan",
    "link",
    "image",
    "br",
    "space",
    "hr",
    "paragraph",
    "heading",
    "list",
    "list_item",
    "blockquote",
    "code",
    "table",
    "html",
]

MARKDOWN_EXTENSIONS: tuple[str, ...] = ("fenced_code", "tables", "nl2br", "sane_lists")
STRIKETHROUGH_RE = r"(~{2})(.+?)~{2}"

_HEADING_LEVELS: dict[str, int] = {f"h{level}": level for level in range(1, 7)}
_BLOCK_ELEMENT_TAGS: frozenset[str] = frozenset(
    {
        "p",
        "ul",
        "ol",
        "li",
        "blockquote",
        "pre",
        "hr",
        "table",
        "div",
        *_HEADING_LEVELS,
    }
)
_MERGEABLE_HTML_TAGS: frozenset[str] = frozenset({"b", "strong", "i", "em"})
_HTML_OPEN_TAG_RE = re.compile(r"^<([a-zA-Z][a-zA-Z0-9]*)\b[^>]*>$")
_HTML_TAG_RE = re.compile(r"<[^>]*>?")
_FENCED_CODE_HTML_RE = re.compile(
    r"^<pre[^>]*><code(?P<attrs>[^>]*)>(?P<code>.*)</code></pre>$",
    re.DOTALL,
)
_LANGUAGE_CLASS_RE = re.compile(r"""class\s*=\s*["'][^"']*?language-([\w+#.-]+)""")
_TEXT_ALIGN_RE = re.compile(r"text-align:\s*(left|right|center)")
_TASK_MARKER_RE = re.compile(r"^\[([ xX])\][ \t]+")
_BLANK_LINE_SPLIT_RE = re.compile(r"\n[ \t]*\n")
_LIST_ITEM_RE = re.compile(
    r"^(?P<indent> *)(?P<marker>[*+-]|(?P<number>\d{1,9})\.)(?P<gap> +)(?=\S)"
)
_TABLE_DELIMITER_RE = re.compile(r"^ {0,3}\|?(?: *:?-+:? *\|)+(?: *:?-+:? *)?\|? *$")


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str = ""
    children: tuple[Token, ...] = ()
    href: str | None = None
    title: str | None = None
    depth: int = 0
    ordered: bool = False
    task: bool = False
    checked: bool = False
    lang: str | None = None
    header: tuple[str, ...] = ()
    align: tuple[str | None, ...] = ()
    rows: tuple[tuple[str, ...], ...] = ()


def tokenize_markdown(markdown_text: str) -> list[Token]:
    """
    Parse Markdown into a token tree.

    A fresh parser is built per call, so tokenization carries no state between
    documents. Parser failures degrade to one text paragraph per block.
    """
    tokens: list[Token] = []
    parser = markdown.Markdown(
        extensions=[
            *MARKDOWN_EXTENSIONS,
            _StrikethroughExtension(),
            _BlockLayoutExtension(),
            _TokenCaptureExtension(tokens),
        ]
    )
    try:
        parser.convert(markdown_text)
    except Exception:
        LOGGER.warning("markdown parse failed; degrading to plain text", exc_info=True)
        return _plain_text_tokens(markdown_text)
    return tokens


def strip_html(fragment: str) -> str:
    return html.unescape(_HTML_TAG_RE.sub("", fragment))


def plain_text(tokens: tuple[Token, ...] | list[Token]) -> str:
    parts: list[str] = []
    for token in tokens:
        if token.kind == "br":
            parts.append("\n")
        elif token.kind == "html":
            parts.append(strip_html(token.text))
        elif token.kind == "image":
            parts.append(token.title or token.text)
        elif token.children:
            parts.append(plain_text(token.children))
        else:
            parts.append(token.text)
    return "".join(parts)


class _StrikethroughExtension(Extension):
    def extendMarkdown(self, md: markdown.Markdown) -> None:
        md.inlinePatterns.register(
            SimpleTagInlineProcessor(STRIKETHROUGH_RE, "del"),
            "strikethrough",
            65,
        )


class _BlockLayoutExtension(Extension):
    def extendMarkdown(self, md: markdown.Markdown) -> None:
        # After fenced code (25) and raw HTML (20) are stashed as placeholders.
        md.preprocessors.register(_BlockLayoutPreprocessor(md), "block_layout", 15)


class _BlockLayoutPreprocessor(Preprocessor):
    """
    Rewrite GFM block layout into the shape Python-Markdown parses.

    GFM lets a list or a table start directly under a paragraph line and nests
    a list item once it reaches the parent item's content column. Python-Markdown
    needs a blank line before both and one tab width of indentation per nesting
    level, so this inserts the blank lines and re-indents list lines.
    """

    def run(self, lines: list[str]) -> list[str]:
        tab = self.md.tab_length
        output: list[str] = []
        # Content column of each open list item, outermost first.
        columns: list[int] = []
        after_blank = True
        in_code = False
        in_table = False
        for index, line in enumerate(lines):
            if not line.strip():
                output.append(line)
                after_blank = True
                in_table = False
                continue

            indent = len(line) - len(line.lstrip(" "))
            if not columns and indent >= tab and (after_blank or in_code):
                in_code = True
                output.append(line)
                after_blank = False
                continue
            in_code = False

            item = _LIST_ITEM_RE.match(line)
            if item is not None and self._opens_item(item, indent, columns, after_blank):
                if not columns and not after_blank:
                    output.append("")
                while columns and indent < columns[-1]:
                    columns.pop()
                output.append(" " * (tab * len(columns)) + line[indent:])
                gap = len(item.group("gap"))
                columns.append(indent + len(item.group("marker")) + (gap if gap <= tab else 1))
                after_blank = False
                in_table = False
                continue

            if columns and after_blank and indent < columns[0]:
                columns.clear()
            if columns:
                output.append(_reindent(line, indent, columns, tab))
            else:
                if not after_blank and not in_table and _starts_table(lines, index):
                    output.append("")
                    in_table = True
                output.append(line)
            after_blank = False
        return output

    def _opens_item(
        self,
        item: re.Match[str],
        indent: int,
        columns: list[int],
        after_blank: bool,
    ) -> bool:
        if columns:
            return indent < columns[-1] + self.md.tab_length
        if indent >= self.md.tab_length:
            return False
        # Only a bullet or an ordered list starting at 1 may interrupt a paragraph.
        number = item.group("number")
        return after_blank or number is None or int(number) == 1


def _reindent(line: str, indent: int, columns: list[int], tab: int) -> str:
    depth = sum(1 for column in columns if column <= indent)
    if depth == 0:
        return line
    extra = indent - columns[depth - 1]
    return " " * (tab * depth + extra) + line[indent:]


def _starts_table(lines: list[str], index: int) -> bool:
    if "|" not in lines[index] or index + 1 >= len(lines):
        return False
    delimiter = lines[index + 1]
    return "|" in delimiter and _TABLE_DELIMITER_RE.match(delimiter) is not None


class _TokenCaptureExtension(Extension):
    def __init__(self, sink: list[Token]) -> None:
        super().__init__()
        self._sink = sink

    def extendMarkdown(self, md: markdown.Markdown) -> None:
        # Pretty-printing injects newline text between elements.
        md.treeprocessors.deregister("prettify", strict=False)
        md.treeprocessors.register(_TokenCaptureTreeprocessor(md, self._sink), "token_capture", -10)


class _TokenCaptureTreeprocessor(Treeprocessor):
    def __init__(self, md: markdown.Markdown, sink: list[Token]) -> None:
        super().__init__(md)
        self._sink = sink

    def run(self, root: etree.Element) -> None:
        walker = _ElementWalker(list(self.md.htmlStash.rawHtmlBlocks))
        self._sink.extend(walker.block_tokens(root))
        return None


class _ElementWalker:
    def __init__(self, stash: list[object]) -> None:
        self._stash = stash

    def block_tokens(self, parent: etree.Element) -> list[Token]:
        tokens: list[Token] = []
        if parent.text:
            tokens.extend(self._loose_text(parent.text))
        for child in parent:
            tokens.extend(self._block_token(child))
            if child.tail:
                tokens.extend(self._loose_text(child.tail))
        return tokens

    def inline_tokens(self, parent: etree.Element) -> list[Token]:
        tokens: list[Token] = []
        if parent.text:
            tokens.extend(self._text_tokens(parent.text))
        for child in parent:
            tokens.extend(self._inline_element(child))
            if child.tail:
                tokens.extend(self._text_tokens(child.tail))
        return _merge_inline_html(tokens)

    def _loose_text(self, text: str) -> list[Token]:
        if not text.strip():
            return [Token("space", text=text)]
        return self._text_tokens(text)

    def _block_token(self, element: etree.Element) -> list[Token]:
        tag = element.tag
        if tag == "p":
            return [self._paragraph(element)]
        if tag in _HEADING_LEVELS:
            children = tuple(self.inline_tokens(element))
            return [
                Token(
                    "heading",
                    text=plain_text(children),
                    depth=_HEADING_LEVELS[tag],
                    children=children,
                )
            ]
        if tag in {"ul", "ol"}:
            items = tuple(self._list_item(child) for child in element if child.tag == "li")
            return [Token("list", ordered=tag == "ol", children=items)]
        if tag == "li":
            return [self._list_item(element)]
        if tag == "blockquote":
            return [Token("blockquote", children=tuple(self.block_tokens(element)))]
        if tag == "pre":
            return [self._code(element)]
        if tag == "hr":
            return [Token("hr")]
        if tag == "table":
            return [self._table(element)]
        if tag not in _BLOCK_ELEMENT_TAGS:
            return self._inline_element(element)

        text = plain_text(self.inline_tokens(element))
        if not text.strip():
            return []
        return [Token("text", text=text)]

    def _paragraph(self, element: etree.Element) -> Token:
        raw = self._lone_placeholder(element)
        if raw is not None:
            code = _fenced_code_token(raw)
            if code is not None:
                return code
            return Token("html", text=raw)
        children = tuple(self.inline_tokens(element))
        return Token("paragraph", text=plain_text(children), children=children)

    def _list_item(self, element: etree.Element) -> Token:
        children: list[Token] = []
        inline_run: list[Token] = []

        def flush() -> None:
            if not inline_run:
                return
            merged = tuple(_merge_inline_html(inline_run))
            text = plain_text(merged)
            if all(token.kind == "text" for token in merged) and not text.strip():
                children.append(Token("space", text=text))
            else:
                children.append(Token("text", text=text, children=merged))
            inline_run.clear()

        if element.text:
            inline_run.extend(self._text_tokens(element.text))
        for child in element:
            if child.tag in _BLOCK_ELEMENT_TAGS:
                flush()
                children.extend(self._block_token(child))
            else:
                inline_run.extend(self._inline_element(child))
            if child.tail:
                inline_run.extend(self._text_tokens(child.tail))
        flush()

        task, checked, children = _strip_task_marker(children)
        return Token(
            "list_item",
            text=plain_text(children),
            task=task,
            checked=checked,
            children=tuple(children),
        )

    def _code(self, element: etree.Element) -> Token:
        code = element.find("code")
        source = code if code is not None else element
        raw_class = source.get("class") or ""
        lang = raw_class.removeprefix("language-") if raw_class.startswith("language-") else None
        text = html.unescape("".join(source.itertext())).rstrip("\n")
        return Token("code", text=text, lang=lang or None)

    def _table(self, element: etree.Element) -> Token:
        header: list[str] = []
        align: list[str | None] = []
        rows: list[tuple[str, ...]] = []
        for row in element.iter("tr"):
            cells = [cell for cell in row if cell.tag in {"th", "td"}]
            if cells and all(cell.tag == "th" for cell in cells) and not header:
                header = [self._cell_text(cell) for cell in cells]
                align = [_cell_alignment(cell) for cell in cells]
                continue
            rows.append(tuple(self._cell_text(cell) for cell in cells))
        return Token("table", header=tuple(header), align=tuple(align), rows=tuple(rows))

    def _cell_text(self, cell: etree.Element) -> str:
        return plain_text(self.inline_tokens(cell)).strip()

    def _inline_element(self, element: etree.Element) -> list[Token]:
        tag = element.tag
        if tag in {"strong", "b"}:
            return [Token("strong", children=tuple(self.inline_tokens(element)))]
        if tag in {"em", "i"}:
            return [Token("em", children=tuple(self.inline_tokens(element)))]
        if tag in {"del", "s"}:
            return [Token("del", children=tuple(self.inline_tokens(element)))]
        if tag == "code":
            return [Token("codespan", text=html.unescape("".join(element.itertext())))]
        if tag == "a":
            children = tuple(self.inline_tokens(element))
            return [
                Token(
                    "link",
                    text=plain_text(children),
                    href=_restore_entities(element.get("href") or ""),
                    title=element.get("title"),
                    children=children,
                )
            ]
        if tag == "img":
            return [
                Token(
                    "image",
                    href=element.get("src") or "",
                    text=element.get("alt") or "",
                    title=element.get("title"),
                )
            ]
        if tag == "br":
            return [Token("br")]
        if tag in _BLOCK_ELEMENT_TAGS:
            return self._block_token(element)

        text = plain_text(self.inline_tokens(element))
        return [Token("text", text=text)] if text else []

    def _text_tokens(self, text: str) -> list[Token]:
        tokens: list[Token] = []
        position = 0
        for match in util.HTML_PLACEHOLDER_RE.finditer(text):
            if match.start() > position:
                tokens.append(Token("text", text=_restore_entities(text[position : match.start()])))
            raw = self._stash_entry(int(match.group(1)))
            if raw is not None:
                tokens.append(Token("html", text=raw))
            position = match.end()
        if position < len(text):
            tokens.append(Token("text", text=_restore_entities(text[position:])))
        return tokens

    def _lone_placeholder(self, element: etree.Element) -> str | None:
        if len(element) or not element.text:
            return None
        match = util.HTML_PLACEHOLDER_RE.fullmatch(element.text.strip())
        if match is None:
            return None
        return self._stash_entry(int(match.group(1)))

    def _stash_entry(self, index: int) -> str | None:
        if index < 0 or index >= len(self._stash):
            return None
        entry = self._stash[index]
        if isinstance(entry, str):
            return entry
        if isinstance(entry, etree.Element):
            return etree.tostring(entry, encoding="unicode")
        return str(entry)


def _merge_inline_html(tokens: list[Token]) -> list[Token]:
    """Join `<b>`, text, `</b>` runs into a single html token."""
    merged: list[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        closing_index = _matching_close_index(tokens, index)
        if closing_index is None:
            merged.append(token)
            index += 1
            continue
        fragment = "".join(part.text for part in tokens[index : closing_index + 1])
        merged.append(Token("html", text=fragment))
        index = closing_index + 1
    return merged


def _matching_close_index(tokens: list[Token], start: int) -> int | None:
    opening = tokens[start]
    if opening.kind != "html":
        return None
    match = _HTML_OPEN_TAG_RE.match(opening.text.strip())
    if match is None:
        return None
    tag_name = match.group(1).lower()
    if tag_name not in _MERGEABLE_HTML_TAGS:
        return None
    closing = f"</{tag_name}>"
    for index in range(start + 1, len(tokens)):
        candidate = tokens[index]
        if candidate.kind == "html" and candidate.text.strip().lower() == closing:
            return index
        if candidate.kind != "text":
            return None
    return None


def _strip_task_marker(children: list[Token]) -> tuple[bool, bool, list[Token]]:
    if not children:
        return False, False, children
    first = children[0]
    if first.kind not in {"text", "paragraph"} or not first.children:
        return False, False, children
    lead = first.children[0]
    if lead.kind != "text" or lead.children:
        return False, False, children
    match = _TASK_MARKER_RE.match(lead.text)
    if match is None:
        return False, False, children

    remainder = lead.text[match.end() :]
    inner = ((replace(lead, text=remainder),) if remainder else ()) + first.children[1:]
    stripped = replace(first, text=plain_text(inner), children=inner)
    return True, match.group(1).lower() == "x", [stripped, *children[1:]]


def _fenced_code_token(raw: str) -> Token | None:
    match = _FENCED_CODE_HTML_RE.match(raw.strip())
    if match is None:
        return None
    lang_match = _LANGUAGE_CLASS_RE.search(match.group("attrs"))
    return Token(
        "code",
        text=html.unescape(match.group("code")).rstrip("\n"),
        lang=lang_match.group(1) if lang_match is not None else None,
    )


def _cell_alignment(cell: etree.Element) -> str | None:
    explicit = cell.get("align")
    if explicit:
        return explicit
    match = _TEXT_ALIGN_RE.search(cell.get("style") or "")
    return match.group(1) if match is not None else None


def _restore_entities(value: str) -> str:
    # Obfuscated mailto links keep their entities behind an ampersand placeholder.
    if util.AMP_SUBSTITUTE not in value:
        return value
    return html.unescape(value.replace(util.AMP_SUBSTITUTE, "&"))


def _plain_text_tokens(markdown_text: str) -> list[Token]:
    tokens: list[Token] = []
    for block in _BLANK_LINE_SPLIT_RE.split(markdown_text):
        stripped = block.strip()
        if not stripped:
            continue
        tokens.append(
            Token("paragraph", text=stripped, children=(Token("text", text=stripped),))
        )
    return tokens
