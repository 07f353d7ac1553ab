"""
LaTeX subset to HTML renderer for the live preview pane.

Turns a LaTeX source string plus a table of named image assets into an HTML
fragment. Each construct is a plain regex rewrite over the working text,
applied in a fixed order so later stages never re-match markup produced by
earlier ones:

- Document shell: body between \\begin{document} and \\end{document}, title/author/date
- Sections, bold/italic, inline and display math, lists, figures, tables
- Line breaks and final cleanup of repeated breaks

Behaviour notes:
- render_latex() never raises for string input; a missing or empty body yields ERROR_FRAGMENT
- Unmatched or malformed constructs pass through as raw LaTeX text
- Body text and metadata are HTML-escaped (< and >) unless escape_html=False
- No module state is written during a render, so concurrent calls are safe
"""
import base64
import logging
import mimetypes
import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

ERROR_FRAGMENT = (
    "<p class=\"render-error\">"
    "Error: \\begin{document} or \\end{document} not found."
    "</p>"
)
DEFAULT_FIGURE_CAPTION = "Figure Caption Missing"

# Argument with at most one level of nested braces, on a single line.
BRACED_TEXT = r"(?:[^{}\n]|\{[^{}\n]*\})*"
BRACED = r"\{(" + BRACED_TEXT + r")\}"

DOCUMENT_RE = re.compile(r"\\begin\{document\}([\s\S]*?)\\end\{document\}", re.IGNORECASE)
METADATA_RES = {
    key: re.compile(r"\\" + key + BRACED, re.IGNORECASE)
    for key in ("title", "author", "date")
}
# An even run of backslashes before % is a line break, not an escape.
COMMENT_RE = re.compile(r"(?<!\\)((?:\\\\)*)%[^\n]*")
MAKETITLE_RE = re.compile(r"\\maketitle(?![a-zA-Z])")

SECTION_RE = re.compile(r"\\section\*?" + BRACED)
SUBSECTION_RE = re.compile(r"\\subsection\*?" + BRACED)
TEXTBF_RE = re.compile(r"\\textbf" + BRACED)
TEXTIT_RE = re.compile(r"\\textit" + BRACED)

DISPLAY_MATH_RE = re.compile(r"(?<!\\)\$\$([\s\S]+?)\$\$|(?<!\\)\\\[([\s\S]+?)\\\]")
INLINE_MATH_RE = re.compile(r"(?<!\\)\$([^$]+)\$")
EQUATION_RE = re.compile(r"\\begin\{(equation\*?)\}([\s\S]*?)\\end\{\1\}")

LIST_RE = re.compile(r"\\begin\{(itemize|enumerate)\}([\s\S]*?)\\end\{\1\}")
ITEM_SPLIT_RE = re.compile(r"\\item(?![a-zA-Z])")

FIGURE_RE = re.compile(r"\\begin\{(figure\*?)\}([\s\S]*?)\\end\{\1\}")
CAPTION_RE = re.compile(r"\\caption" + BRACED)
INCLUDEGRAPHICS_RE = re.compile(r"\\includegraphics(?:\[[^\]\n]*\])?\{([^{}\n]*)\}")
FRAMEBOX_RE = re.compile(r"\\framebox(?:\[[^\]\n]*\])*\{((?:[^{}]|\{[^{}]*\})*)\}")

# A caption may sit directly above or directly below the tabular; \label and
# \centering may come between them.
TABLE_RE = re.compile(
    r"(?:\\caption\{(?P<above>" + BRACED_TEXT + r")\}"
    r"\s*(?:(?:\\label\{[^{}\n]*\}|\\centering(?![a-zA-Z]))\s*)*)?"
    r"\\begin\{tabular\}\{(?P<colspec>(?:[^{}]|\{[^{}]*\})*)\}(?P<rows>[\s\S]*?)\\end\{tabular\}"
    r"(?:\s*(?:\\label\{[^{}\n]*\}\s*)?\\caption\{(?P<below>" + BRACED_TEXT + r")\})?"
)
ROW_SPLIT_RE = re.compile(r"\\\\(?:\[[^\]\n]*\])?")
RULE_RE = re.compile(r"\\(?:toprule|midrule|bottomrule|hline)(?![a-zA-Z])|\\cline\{[^{}\n]*\}")
# Split on unescaped '&', but not on the entities produced by escape_text().
CELL_SPLIT_RE = re.compile(r"(?<!\\)&(?!(?:lt|gt|amp|quot|#x27);)")
COLUMN_ALIGN = {"l": "", "c": "center", "r": "right", "p": "", "m": "", "b": "", "X": ""}

LAYOUT_WRAPPER_RE = re.compile(
    r"\\begin\{(?:table\*?|center)\}(?:\[[^\]\n]*\])?"
    r"|\\end\{(?:table\*?|center)\}"
    r"|\\centering(?![a-zA-Z])"
    r"|\\label\{[^{}\n]*\}"
)
SPECIAL_CHAR_RE = re.compile(r"\\([&%$#_])")
BREAK_RUN_RE = re.compile(r"(?:<br>\s*){3,}")
TAG_RE = re.compile(r"<[^>]*>")
LINE_FOLD_RE = re.compile(r"\s*\n\s*")


class Asset(NamedTuple):
    """A named image the document can reference from \\includegraphics."""
    name: str
    data: Any


class RenderOptions(NamedTuple):
    """Knobs for render_latex(); the defaults are what the preview pane uses."""
    escape_html: bool = True
    today: Optional[str] = None


DEFAULT_OPTIONS = RenderOptions()


# ---------- Escaping ----------

def escape_html(s: str) -> str:
    """Escape HTML special characters including quotes."""
    if not s:
        return ""
    return (s.replace("&", "&amp;")
             .replace("<", "&lt;")
             .replace(">", "&gt;")
             .replace('"', "&quot;")
             .replace("'", "&#x27;"))

def escape_text(s: str) -> str:
    """Escape angle brackets so document text cannot open tags."""
    if not s:
        return ""
    return s.replace("<", "&lt;").replace(">", "&gt;")

def escape_attribute(s: str) -> str:
    """Make already-rendered text safe inside a double-quoted attribute."""
    if not s:
        return ""
    return TAG_RE.sub("", s).replace('"', "&quot;").replace("<", "&lt;").replace(">", "&gt;")


# ---------- Asset Resolver ----------

def _asset_fields(asset: Any) -> Tuple[Optional[str], Any]:
    if isinstance(asset, dict):
        name, data = asset.get("name"), asset.get("data")
    elif isinstance(asset, tuple) and len(asset) == 2:
        name, data = asset
    else:
        name, data = getattr(asset, "name", None), getattr(asset, "data", None)
    if not isinstance(name, str):
        return None, None
    return name, data

class AssetResolver:
    """
    Name-keyed lookup over the caller's asset list.

    Accepts Asset tuples, (name, data) pairs or dicts with "name" and "data".
    Names match exactly; a later asset with the same name replaces an earlier one.
    The data objects are held by reference, never copied.
    """
    def __init__(self, assets: Iterable = ()):
        self._table: Dict[str, Any] = {}
        for asset in assets or ():
            name, data = _asset_fields(asset)
            if name is not None:
                self._table[name] = data

    def lookup(self, name: str) -> Optional[Any]:
        """Return the data registered under name, or None."""
        return self._table.get(name)

    def names(self) -> List[str]:
        return list(self._table)

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self):
        return f"AssetResolver(names={self.names()})"

def asset_source(name: str, data: Any) -> str:
    """Turn asset data into an <img src> value; raw bytes become a data URI."""
    if isinstance(data, (bytes, bytearray)):
        mime = mimetypes.guess_type(name)[0] or "application/octet-stream"
        return f"data:{mime};base64,{base64.b64encode(bytes(data)).decode('ascii')}"
    return str(data)


# ---------- Document Shell Parser ----------

def strip_comments(text: str) -> str:
    """Drop % comments up to the end of the line, keeping escaped \\% and a \\\\ before the comment."""
    return COMMENT_RE.sub(r"\1", text)

def extract_body(source: str) -> Optional[str]:
    """Return the text between the first document markers, or None."""
    match = DOCUMENT_RE.search(source)
    if match is None:
        return None
    return match.group(1)

def extract_metadata(source: str, options: RenderOptions = DEFAULT_OPTIONS) -> Dict[str, str]:
    """
    Pull \\title, \\author and \\date from anywhere in the full source.

    Each key appears only when its command does; the first occurrence wins.
    """
    metadata = {}
    for key, pattern in METADATA_RES.items():
        match = pattern.search(source)
        if match is None:
            continue
        value = match.group(1).strip()
        if key == "author":
            value = re.sub(r"\s*\\and(?![a-zA-Z])\s*", ", ", value)
        elif key == "date" and options.today is not None:
            value = re.sub(r"\\today(?![a-zA-Z])", lambda _: options.today, value)
        metadata[key] = value
    return metadata

def render_title_block(metadata: Dict[str, str], options: RenderOptions = DEFAULT_OPTIONS) -> str:
    """Render title, author and date, in that order; empty when none are set."""
    def field(key):
        value = metadata[key]
        if options.escape_html:
            value = escape_text(value)
        return unescape_specials(convert_inline_styles(value), options.escape_html)

    parts = []
    if "title" in metadata:
        parts.append(f"<h1 class=\"doc-title\">{field('title')}</h1>")
    if "author" in metadata:
        parts.append(f"<p class=\"doc-author\">By: {field('author')}</p>")
    if "date" in metadata:
        parts.append(f"<p class=\"doc-date\">{field('date')}</p>")
    if not parts:
        return ""
    return "<header class=\"title-block\">" + "".join(parts) + "</header>"


# ---------- Block Extractors ----------

def strip_maketitle(text: str) -> str:
    return MAKETITLE_RE.sub("", text)

def convert_sections(text: str) -> str:
    """Map \\section and \\subsection to headings; no deeper levels."""
    text = SECTION_RE.sub(lambda m: f"<h2 class=\"section-heading\">{m.group(1).strip()}</h2>", text)
    return SUBSECTION_RE.sub(lambda m: f"<h3 class=\"subsection-heading\">{m.group(1).strip()}</h3>", text)

def convert_inline_styles(text: str) -> str:
    # Bold first so \textit nested inside \textbf is still reachable.
    text = TEXTBF_RE.sub(lambda m: f"<strong>{m.group(1)}</strong>", text)
    return TEXTIT_RE.sub(lambda m: f"<em>{m.group(1)}</em>", text)

def _math_block(content: str) -> str:
    # LaTeX control spaces ("\ ") are dropped.
    content = content.strip().replace("\\ ", "")
    return f"<div class=\"math-block\">{content}</div>"

def convert_inline_math(text: str) -> str:
    """Render $...$ as code spans; $$...$$ and \\[...\\] become display blocks."""
    text = DISPLAY_MATH_RE.sub(lambda m: _math_block(m.group(1) if m.group(1) is not None else m.group(2)), text)
    return INLINE_MATH_RE.sub(lambda m: f"<code class=\"math-inline\">{m.group(1)}</code>", text)

def convert_equations(text: str) -> str:
    return EQUATION_RE.sub(lambda m: _math_block(m.group(2)), text)

def _fold_lines(text: str) -> str:
    return LINE_FOLD_RE.sub(" ", text.strip())

def convert_lists(text: str) -> str:
    """Turn itemize/enumerate bodies into <ul>/<ol>, one <li> per \\item."""
    def replace(match):
        tag = "ul" if match.group(1) == "itemize" else "ol"
        # Segment 0 is whatever precedes the first \item.
        items = ITEM_SPLIT_RE.split(match.group(2))[1:]
        entries = "".join(f"<li>{_fold_lines(item)}</li>" for item in items)
        return f"<{tag} class=\"latex-list\">{entries}</{tag}>"
    return LIST_RE.sub(replace, text)

def _figure_placeholder(content: str) -> str:
    framebox = FRAMEBOX_RE.search(content)
    detail = "No \\includegraphics command found."
    if framebox:
        boxed = re.sub(r"\\[a-zA-Z]+\*?|[{}]", "", framebox.group(1)).strip()
        if boxed:
            detail = _fold_lines(boxed)
    return (
        "<div class=\"figure-placeholder\">"
        "<p class=\"placeholder-title\">Figure Placeholder</p>"
        f"<p class=\"placeholder-detail\">{detail}</p>"
        "</div>"
    )

def convert_figures(text: str, resolver: AssetResolver) -> str:
    """
    Render figure environments.

    The image comes from \\includegraphics[opts]{file} looked up in resolver.
    A file that is not in the asset table renders a visible marker naming it,
    and a figure without \\includegraphics renders a generic placeholder.
    """
    def replace(match):
        content = match.group(2)
        caption_match = CAPTION_RE.search(content)
        caption = caption_match.group(1).strip() if caption_match else DEFAULT_FIGURE_CAPTION
        graphics = INCLUDEGRAPHICS_RE.search(content)

        if graphics is None:
            image_html = _figure_placeholder(content)
        else:
            file_name = graphics.group(1)
            data = resolver.lookup(file_name)
            if data:
                src = escape_html(asset_source(file_name, data))
                image_html = (
                    f"<img class=\"asset-image\" src=\"{src}\" "
                    f"alt=\"Figure: {escape_attribute(caption)}\">"
                )
            else:
                logger.debug("Figure references unknown asset %r", file_name)
                image_html = (
                    "<div class=\"image-not-found\">"
                    f"[IMAGE NOT FOUND: {file_name}]<br>"
                    "<span class=\"asset-hint\">Please import this asset or update the LaTeX command.</span>"
                    "</div>"
                )
        return (
            "<figure class=\"latex-figure\">"
            f"{image_html}"
            f"<figcaption class=\"figure-caption\">Figure: {caption}</figcaption>"
            "</figure>"
        )
    return FIGURE_RE.sub(replace, text)

def column_alignments(spec: str) -> List[str]:
    """Map a tabular column spec such as '|l|c|r|' to text-align values."""
    spec = re.sub(r"\{[^{}]*\}", "", spec)
    return [COLUMN_ALIGN[ch] for ch in spec if ch in COLUMN_ALIGN]

def _cells(row: str, tag: str, alignments: List[str]) -> str:
    cells = []
    for i, cell in enumerate(CELL_SPLIT_RE.split(row)):
        align = alignments[i] if i < len(alignments) else ""
        style = f" style=\"text-align:{align}\"" if align else ""
        cells.append(f"<{tag}{style}>{_fold_lines(cell)}</{tag}>")
    return "<tr>" + "".join(cells) + "</tr>"

def convert_tables(text: str) -> str:
    """
    Render tabular environments.

    Rows are split on \\\\ and rule commands are removed; rows left empty are
    dropped. The first remaining row is the header. A \\caption right before
    \\begin{tabular} or right after \\end{tabular} becomes the table caption
    and is consumed with the table; the one above wins when both are given.
    """
    def replace(match):
        alignments = column_alignments(match.group("colspec"))
        rows = []
        for raw_row in ROW_SPLIT_RE.split(match.group("rows")):
            row = RULE_RE.sub("", raw_row).strip()
            if row:
                rows.append(row)

        caption = match.group("above")
        if caption is None:
            caption = match.group("below")
        parts = ["<table class=\"latex-table\">"]
        if caption is not None:
            parts.append(f"<caption>Table: {caption.strip()}</caption>")
        if rows:
            parts.append("<thead>" + _cells(rows[0], "th", alignments) + "</thead>")
            parts.append("<tbody>" + "".join(_cells(row, "td", alignments) for row in rows[1:]) + "</tbody>")
        parts.append("</table>")
        return "".join(parts)
    return TABLE_RE.sub(replace, text)

def strip_layout_wrappers(text: str) -> str:
    """Remove table/center wrappers, \\centering and \\label left around rendered blocks."""
    return LAYOUT_WRAPPER_RE.sub("", text)

def unescape_specials(text: str, escape: bool = True) -> str:
    def replace(match):
        char = match.group(1)
        if char == "&" and escape:
            return "&amp;"
        return char
    return SPECIAL_CHAR_RE.sub(replace, text)

def convert_newlines(text: str) -> str:
    return text.replace("\n", "<br>")

def collapse_breaks(text: str) -> str:
    """Collapse three or more consecutive <br> into two."""
    return BREAK_RUN_RE.sub("<br><br>", text)


# ---------- Renderer Pipeline ----------

def render_latex(source: str, assets: Iterable = (), options: Optional[RenderOptions] = None) -> str:
    """
    Render a LaTeX document into an HTML fragment for the preview pane.

    Args:
        source: Full LaTeX source, preamble included
        assets: Asset tuples, (name, data) pairs or {"name", "data"} dicts
        options: RenderOptions; defaults escape body text

    Returns:
        The title block followed by the rendered body, or ERROR_FRAGMENT when
        the document markers are missing or enclose nothing.
    """
    options = options or DEFAULT_OPTIONS
    if not isinstance(source, str) or not source:
        return ERROR_FRAGMENT

    source = strip_comments(source.replace("\r\n", "\n"))
    body = extract_body(source)
    if not body:
        logger.debug("No document body found in %d characters of source", len(source))
        return ERROR_FRAGMENT

    resolver = AssetResolver(assets)
    title_block = render_title_block(extract_metadata(source, options), options)

    html = body.strip()
    if options.escape_html:
        html = escape_text(html)
    html = strip_maketitle(html)
    html = convert_sections(html)
    html = convert_inline_styles(html)
    html = convert_inline_math(html)
    html = convert_equations(html)
    html = convert_lists(html)
    html = convert_figures(html, resolver)
    html = convert_tables(html)
    html = strip_layout_wrappers(html)
    html = unescape_specials(html, options.escape_html)
    html = convert_newlines(html)
    html = collapse_breaks(html)

    return title_block + html
