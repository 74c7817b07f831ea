"""
Markdown Renderer
=================

Pure transform from a StructuredAnswer to Markdown, plus a structural scan
of the rendered text (headers, sections, lists, tables, code fences).

Rendering is deterministic: the same answer always yields byte-identical
Markdown. Content inside code fences is ignored by the structure scan.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .schema import (
    CodeBlockInfo,
    ContentStructure,
    HeaderInfo,
    ListInfo,
    SectionInfo,
    StructuredAnswer,
    TableInfo,
)

_ZERO_WIDTH = "\u200b"
_FENCE = "```"
WORDS_PER_MINUTE = 200

_HEADER_RE = re.compile(r"^(#{1,6})\s+(.*)$")
_ORDERED_RE = re.compile(r"^\d+\.\s")
_UNORDERED_RE = re.compile(r"^[-*+]\s")
_HRULE_RE = re.compile(r"^-{3,}\s*$")
_EMOJI_RE = re.compile(
    "["
    "\U0001F300-\U0001FAFF"   # symbols, pictographs, emoticons, transport
    "\U00002600-\U000027BF"   # misc symbols, dingbats
    "\U0001F1E6-\U0001F1FF"   # regional indicators
    "\U00002B00-\U00002BFF"   # arrows, stars
    "]"
)
_MULTI_BLANK_RE = re.compile(r"\n{3,}")

# ── Rendering ────────────────────────────────────────────────────────────────

def _clean(text: str) -> str:
    return text.replace(_ZERO_WIDTH, "")

def _one_line(text: str) -> str:
    return " ".join(_clean(text).split())

def _demote_headings(body: str) -> str:
    """Push H1/H2 lines in a section body down to H3 so only headings own those levels."""
    out: list[str] = []
    in_fence = False
    for line in body.split("\n"):
        if line.startswith(_FENCE):
            in_fence = not in_fence
        elif not in_fence:
            match = _HEADER_RE.match(line)
            if match and len(match.group(1)) <= 2:
                line = f"### {match.group(2).strip()}"
        out.append(line)
    return "\n".join(out)

def render_markdown(answer: StructuredAnswer) -> str:
    """Render a StructuredAnswer to Markdown. Blank sections and code blocks are skipped."""
    lines: list[str] = []

    title = _one_line(answer.title)
    if title:
        lines += [f"# {title}", ""]

    if answer.tldr.strip():
        lines += [f"> **TL;DR**: {answer.tldr.strip()}", ""]

    for section in answer.sections:
        heading = _one_line(section.heading)
        if not heading or not section.body.strip():
            continue
        lines += [f"## {heading}", "", _demote_headings(_clean(section.body).strip()), ""]

        for block in section.code:
            if not block.content.strip():
                continue
            lines += [f"{_FENCE}{block.language.strip()}", _clean(block.content), _FENCE]
            if block.caption:
                lines.append(f"*{block.caption}*")
            lines.append("")

    if answer.references:
        lines += ["---", "", "### References", ""]
        lines += [
            f"- [{ref.label}]({ref.url})"
            for ref in answer.references
            if ref.label and ref.url
        ]
        lines.append("")

    return "\n".join(lines).strip()

# ── Structure Analysis ───────────────────────────────────────────────────────

def _prose_lines(lines: list[str]) -> list[str | None]:
    """Blank out lines inside code fences (fence markers included) with None."""
    out: list[str | None] = []
    in_fence = False
    for line in lines:
        if line.startswith(_FENCE):
            in_fence = not in_fence
            out.append(None)
            continue
        out.append(None if in_fence else line)
    return out

def _headers(prose: list[str | None]) -> list[tuple[int, HeaderInfo]]:
    found: list[tuple[int, HeaderInfo]] = []
    for idx, line in enumerate(prose):
        if line is None:
            continue
        match = _HEADER_RE.match(line)
        if match:
            text = match.group(2).strip()
            found.append((
                idx,
                HeaderInfo(
                    text=text,
                    level=len(match.group(1)),
                    has_emoji=bool(_EMOJI_RE.search(text)),
                ),
            ))
    return found

def _sections(
    prose: list[str | None], headers: list[tuple[int, HeaderInfo]]
) -> list[SectionInfo]:
    """A section runs from an H2 to the next H1/H2 or horizontal rule."""
    levels = {idx: header.level for idx, header in headers}
    sections: list[SectionInfo] = []
    for start, header in headers:
        if header.level != 2:
            continue
        words = 0
        has_subsections = False
        for idx in range(start + 1, len(prose)):
            line = prose[idx]
            if line is None:
                continue
            if _HRULE_RE.match(line) or levels.get(idx, 99) <= 2:
                break
            if idx in levels:
                has_subsections = True
                continue
            words += len(line.split())
        sections.append(SectionInfo(
            title=header.text, word_count=words, has_subsections=has_subsections
        ))
    return sections

@dataclass
class _ListAcc:
    type: str
    item_count: int = 0
    nested: bool = False

def _lists(prose: list[str | None]) -> list[ListInfo]:
    lists: list[_ListAcc] = []
    current: _ListAcc | None = None
    for line in prose:
        if line is None:
            current = None
            continue
        stripped = line.strip()
        if not stripped:
            continue
        if _HRULE_RE.match(stripped):
            current = None
            continue
        if _ORDERED_RE.match(stripped):
            kind = "ordered"
        elif _UNORDERED_RE.match(stripped):
            kind = "unordered"
        else:
            current = None
            continue
        if current is None or current.type != kind:
            current = _ListAcc(type=kind)
            lists.append(current)
        current.item_count += 1
        if line.startswith("  "):
            current.nested = True
    return [ListInfo(type=acc.type, item_count=acc.item_count, nested=acc.nested) for acc in lists]

@dataclass
class _TableAcc:
    column_count: int
    rows: int = 0
    is_valid: bool = True

def _tables(prose: list[str | None]) -> list[TableInfo]:
    tables: list[_TableAcc] = []
    current: _TableAcc | None = None
    for line in prose:
        if line is None or "|" not in line or not line.strip():
            current = None
            continue
        if current is None:
            current = _TableAcc(column_count=line.count("|") - 1)
            tables.append(current)
        cells = [c for c in (cell.strip() for cell in line.split("|")) if c]
        current.rows += 1
        if cells and len(cells) != current.column_count:
            current.is_valid = False
    return [
        TableInfo(row_count=t.rows, column_count=max(t.column_count, 0), is_valid=t.is_valid)
        for t in tables
    ]

def _code_blocks(lines: list[str]) -> list[CodeBlockInfo]:
    blocks: list[CodeBlockInfo] = []
    language: str | None = None
    for line in lines:
        if not line.startswith(_FENCE):
            continue
        if language is None:
            language = line[len(_FENCE):].strip()
        else:
            blocks.append(CodeBlockInfo(language=language, is_valid=True))
            language = None
    if language is not None:
        blocks.append(CodeBlockInfo(language=language, is_valid=False))
    return blocks

def analyze_structure(markdown: str) -> ContentStructure:
    """Scan rendered Markdown for headers, sections, lists, tables and code fences."""
    lines = markdown.split("\n")
    prose = _prose_lines(lines)
    headers = _headers(prose)
    return ContentStructure(
        headers=[h for _, h in headers],
        sections=_sections(prose, headers),
        lists=_lists(prose),
        tables=_tables(prose),
        code_blocks=_code_blocks(lines),
    )

# ── Repair & Metrics ─────────────────────────────────────────────────────────

def repair_markdown(markdown: str) -> tuple[str, list[str]]:
    """Close an unterminated fence and collapse runs of blank lines."""
    repairs: list[str] = []
    text = markdown

    collapsed = _MULTI_BLANK_RE.sub("\n\n", text)
    if collapsed != text:
        repairs.append("collapsed_blank_lines")
        text = collapsed

    fences = sum(1 for line in text.split("\n") if line.startswith(_FENCE))
    if fences % 2 == 1:
        text = text.rstrip("\n") + "\n" + _FENCE
        repairs.append("closed_code_fence")

    return text, repairs

_CODE_SPAN_RE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`[^`]+`")
_IMAGE_RE = re.compile(r"!\[.*?\]\(.*?\)")
_LINK_RE = re.compile(r"\[.*?\]\(.*?\)")
_HEADER_MARK_RE = re.compile(r"#+ ")
_EMPHASIS_RE = re.compile(r"[*_~]+")

def estimate_reading_time(markdown: str, words_per_minute: int = WORDS_PER_MINUTE) -> int:
    """Minutes to read the prose (code, links and markup excluded); at least 1."""
    text = _CODE_SPAN_RE.sub("", markdown)
    for pattern in (_INLINE_CODE_RE, _IMAGE_RE, _LINK_RE, _HEADER_MARK_RE, _EMPHASIS_RE):
        text = pattern.sub("", text)
    return max(1, round(len(text.split()) / words_per_minute))

# ── Facade ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class RenderedAnswer:
    markdown: str
    structure: ContentStructure
    reading_time_min: int

def render(answer: StructuredAnswer) -> RenderedAnswer:
    markdown = render_markdown(answer)
    return RenderedAnswer(
        markdown=markdown,
        structure=analyze_structure(markdown),
        reading_time_min=estimate_reading_time(markdown),
    )
