"""
Converts assistant Markdown into safe HTML for the chat UI.

Assistant messages may embed "visual block" specs for the client-side
JsonRender widget. Markdown rendering would mangle them, so they are pulled
out before rendering, replaced by an opaque placeholder token, and swapped for
a widget container (or a plain code block when the payload is not valid JSON)
after rendering.

Recognised forms, in pass order:

1. ```spec        JSONL patches, one JSON Patch op per line       -> jsonl
2. ```json-render a single nested JSON spec (legacy)              -> json
3. ```json        only when the JSON has a spec shape              -> json
4. bare JSONL     unfenced runs of patch lines (heuristic)        -> jsonl

Both ``render`` and ``render_streaming`` are pure; placeholder ids come from a
counter owned by a single extraction call.
"""
import html
import itertools
import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Optional

from markdown_it import MarkdownIt
from mdit_py_plugins.footnote import footnote_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

from chatcore.config import JSONL_MIN_PATCH_LINES, JSONL_BUFFER_BLANK_LINES


# Raw HTML in LLM output is escaped, never passed through.
_md = (
    MarkdownIt("commonmark", {"html": False, "linkify": True})
    .enable(["table", "strikethrough", "linkify"])
    .use(tasklists_plugin)
    .use(footnote_plugin)
)

_UUID_RE = re.compile(r"\[uuid:([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\]")

SPEC_FENCE_RE = re.compile(r"```spec\s*\n(.*?)```", re.S)
JSON_RENDER_FENCE_RE = re.compile(r"```json-render\s*\n(.*?)```", re.S)
JSON_SPEC_FENCE_RE = re.compile(r"```json\s*\n(.*?)```", re.S)

# Opening/closing line of a code fence (CommonMark allows up to 3 spaces of indent).
_FENCE_LINE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")

_PLACEHOLDER_RE = re.compile(r"<p>(JRBLOCK[0-9a-f]+x\d+JREND)</p>|(JRBLOCK[0-9a-f]+x\d+JREND)")

FORMAT_JSONL = "jsonl"
FORMAT_JSON = "json"


def placeholder(nonce: str, block_id: int) -> str:
    return f"JRBLOCK{nonce}x{block_id}JREND"


@dataclass(frozen=True)
class VisualBlock:
    id: int       # DOM id suffix, jr-{id}
    format: str   # jsonl | json
    content: str


@dataclass(frozen=True)
class JsonlHeuristic:
    """Policy for detecting unfenced JSONL patch blocks."""
    min_patch_lines: int = JSONL_MIN_PATCH_LINES
    buffer_blank_lines: bool = JSONL_BUFFER_BLANK_LINES


@dataclass
class _ExtractionContext:
    # Random per call so literal placeholder-like text in a message never matches
    nonce: str = field(default_factory=lambda: secrets.token_hex(4))
    blocks: dict[str, VisualBlock] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def add(self, fmt: str, content: str) -> str:
        block_id = next(self._ids)
        token = placeholder(self.nonce, block_id)
        self.blocks[token] = VisualBlock(block_id, fmt, content)
        return token


# ─────────────────────────────────────────────
# Public rendering API
# ─────────────────────────────────────────────

def render(markdown: Optional[str]) -> str:
    """Render a complete markdown message to HTML."""
    if not markdown:
        return ""
    cleaned, blocks = extract_visual_blocks(markdown)
    return restore_visual_blocks(replace_citations(_md.render(cleaned)), blocks)


def render_streaming(markdown: Optional[str]) -> str:
    """
    Render a possibly incomplete markdown prefix.

    Blocks whose closing fence has not arrived yet are not extracted; their
    text stays literal. A trailing unterminated code fence is closed before
    rendering so the partial output is well formed.
    """
    if not markdown:
        return ""
    cleaned, blocks = extract_visual_blocks(markdown)
    html_out = _md.render(_close_open_fence(cleaned))
    return restore_visual_blocks(replace_citations(html_out), blocks)


def replace_citations(html_text: str) -> str:
    """Turn ``[uuid:...]`` markers into numbered source buttons, in order of appearance."""
    counter = itertools.count(1)

    def _button(m: re.Match) -> str:
        return (
            f'<button class="rag-cite" data-action="show_source" '
            f'data-doc-id="{m.group(1)}">{next(counter)}</button>'
        )

    return _UUID_RE.sub(_button, html_text)


# ─────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────

def extract_visual_blocks(
    markdown: str,
    heuristic: Optional[JsonlHeuristic] = None,
) -> tuple[str, dict[str, VisualBlock]]:
    """Return the markdown with visual blocks replaced by placeholders, and the blocks keyed by placeholder."""
    ctx = _ExtractionContext()
    md = _extract_by_regex(ctx, markdown, SPEC_FENCE_RE, FORMAT_JSONL)
    md = _extract_by_regex(ctx, md, JSON_RENDER_FENCE_RE, FORMAT_JSON)
    md = _extract_by_regex(ctx, md, JSON_SPEC_FENCE_RE, FORMAT_JSON, validate=True)
    md = _extract_bare_jsonl_blocks(ctx, md, heuristic or JsonlHeuristic())
    return md, ctx.blocks


def _extract_by_regex(
    ctx: _ExtractionContext,
    markdown: str,
    regex: re.Pattern,
    fmt: str,
    validate: bool = False,
) -> str:
    replacements = []
    for m in regex.finditer(markdown):
        content = m.group(1).strip()
        if validate and not is_json_render_spec(content):
            # Ordinary JSON example; leave it as a code block
            continue
        replacements.append((m.start(), m.end(), ctx.add(fmt, content)))

    # Splice from the end so earlier offsets stay valid
    for start, end, token in reversed(replacements):
        markdown = markdown[:start] + token + markdown[end:]
    return markdown


def is_json_render_spec(text: str) -> bool:
    """
    Nested: {"root": {"type": ..., "props": ...}}
    Flat:   {"root": "key", "elements": {...}}
    """
    try:
        data = json.loads(text)
    except ValueError:
        return False
    if not isinstance(data, dict) or "root" not in data:
        return False
    root = data["root"]
    if isinstance(root, dict) and "type" in root and "props" in root:
        return True
    return "elements" in data


def is_jsonl_patch_line(line: str) -> bool:
    # Prefix check only; parsing every line of prose would be wasteful
    trimmed = line.strip()
    return trimmed.startswith('{"op":') and '"path":' in trimmed


def _extract_bare_jsonl_blocks(ctx: _ExtractionContext, markdown: str, policy: JsonlHeuristic) -> str:
    """
    Line scan for unfenced JSONL patches outside code fences.

    Blank lines inside a run are buffered: absorbed if another patch line
    follows, re-emitted if prose follows. A run shorter than the policy
    minimum is put back verbatim.
    """
    out: list[str] = []
    run: list[str] = []       # raw lines of the open run, absorbed blanks included
    patches: list[str] = []   # patch lines only
    blanks: list[str] = []    # blanks seen since the last patch line
    fence: Optional[str] = None

    def flush() -> None:
        if patches and len(patches) >= policy.min_patch_lines:
            out.append(ctx.add(FORMAT_JSONL, "\n".join(patches).strip()))
        else:
            out.extend(run)
        run.clear()
        patches.clear()

    for line in markdown.split("\n"):
        if fence is not None:
            out.append(line)
            if _closes_fence(line, fence):
                fence = None
            continue

        if is_jsonl_patch_line(line):
            run.extend(blanks)
            blanks.clear()
            run.append(line)
            patches.append(line)
        elif patches and not line.strip() and policy.buffer_blank_lines:
            blanks.append(line)
        else:
            flush()
            out.extend(blanks)
            blanks.clear()
            out.append(line)
            m = _FENCE_LINE_RE.match(line)
            if m:
                fence = m.group(1)

    flush()
    out.extend(blanks)
    return "\n".join(out)


def _closes_fence(line: str, fence: str) -> bool:
    m = _FENCE_LINE_RE.match(line)
    if not m:
        return False
    marker = m.group(1)
    # A closing fence carries no info string
    return marker[0] == fence[0] and len(marker) >= len(fence) and not line.strip()[len(marker):].strip()


def _close_open_fence(markdown: str) -> str:
    fence = None
    for line in markdown.split("\n"):
        if fence is None:
            m = _FENCE_LINE_RE.match(line)
            if m:
                fence = m.group(1)
        elif _closes_fence(line, fence):
            fence = None
    if fence is None:
        return markdown
    sep = "" if markdown.endswith("\n") else "\n"
    return f"{markdown}{sep}{fence}\n"


# ─────────────────────────────────────────────
# Restoration
# ─────────────────────────────────────────────

def restore_visual_blocks(html_text: str, blocks: dict[str, VisualBlock]) -> str:
    """Swap each placeholder (bare or wrapped in <p>) for its widget container."""
    if not blocks:
        return html_text

    def _swap(m: re.Match) -> str:
        block = blocks.get(m.group(1) or m.group(2))
        if block is None:
            return m.group(0)
        return build_block_html(block)

    return _PLACEHOLDER_RE.sub(_swap, html_text)


def build_block_html(block: VisualBlock) -> str:
    escaped = html.escape(block.content, quote=True)
    if block.format == FORMAT_JSONL:
        if any(_decodes(line) for line in block.content.split("\n") if line.strip()):
            return _container(block.id, escaped, ' data-format="jsonl"')
        return f'<pre><code class="language-spec">{escaped}</code></pre>'

    if _decodes(block.content):
        return _container(block.id, escaped, "")
    return f'<pre><code class="language-json-render">{escaped}</code></pre>'


def _container(block_id: int, escaped: str, extra_attrs: str) -> str:
    return (
        f'<div id="jr-{block_id}" class="visual-block" data-hook="JsonRender" '
        f'data-update="ignore"{extra_attrs} data-spec="{escaped}"></div>'
    )


def _decodes(text: str) -> bool:
    try:
        json.loads(text.strip())
    except ValueError:
        return False
    return True
