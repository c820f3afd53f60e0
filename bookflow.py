#!/usr/bin/env python3
"""\
Usages:
    bookflow FILE...        lay out FILE(s) as chapters and dump the rows
    bookflow DIR            lay out every .xhtml/.html/.htm file in DIR

Options:
    -w WIDTH        text width (default 70, minimum 20)
    -H HEIGHT       page height used to align chapter starts (default 24)
    --seamless      no chapter break padding between chapters
    --links         list links and where they lead
    --images        list images and the rows they sit on
    --chunks        list read-aloud chunks
    -h, --help      print short, long help
    -v, --version   print version
    --debug         log debug info to stderr (also BOOKFLOW_DEBUG=1)

Layout:
    Heading          : "# " per heading level on its first row
    List item        : "* " or "1. " with aligned continuation rows
    Quote            : indented by three columns per level
    Image            : [Image: title, alt or file name] on its own row
    Chapter break    : blank rows up to the next page, one "* * *" row
    Superscript      : ^{text}
    Subscript        : _{text}
"""


__version__ = "0.1.0"
__build_time__ = "2026-10-19 00:00:00"
__license__ = "MIT"
__author__ = "bookflow contributors"
__email__ = ""
__url__ = ""


import sys
import re
import os
import bisect
import logging
import mimetypes
import posixpath
import queue
import textwrap
import threading
from collections import namedtuple
from html.parser import HTMLParser
from io import BytesIO
from urllib.parse import unquote

from bs4 import BeautifulSoup, NavigableString, Tag
from PIL import Image
from pygments.lexers import get_lexer_by_name, guess_lexer
from pygments.lexers.special import TextLexer
from pygments.util import ClassNotFound


LOG = logging.getLogger("bookflow")

# Width and paging
MIN_WIDTH = 20
DEFAULT_WIDTH = 70
DEFAULT_PAGE_HEIGHT = 24
MIN_TERMINAL_PADDING = 5
MIN_HYPHEN_PREFIX = 2

# Read-aloud chunk bounds (characters)
CHUNK_MIN_LEN = 300
CHUNK_MAX_LEN = 400

RESIZE_DELAY = 1.0  # seconds of quiet before a resize is acted on
JUMP_HISTORY_LIMIT = 100

IMAGE_PREFIX = "[Image:"
CHAPTER_BREAK_MARKER = "* * *"
BOLD = "bold"
ITALIC = "italic"

EXTERNAL_SCHEMES = ("http://", "https://", "mailto:", "tel:", "ftp://")
FOOTNOTE_PREFIXES = ("fn", "footnote", "endnote", "note")
CHAPTER_EXTENSIONS = (".xhtml", ".html", ".htm")

# (words to skip, words to take) when searching rows for a node's text
WORD_WINDOWS = ((0, 32), (0, 10), (0, 5), (0, 3), (1, 32), (1, 10), (1, 5), (1, 3), (0, 2))
MIN_NEEDLE_LEN = 3
MIN_REVERSE_MATCH = 12

BLOCK_TAGS = {
    "p", "div", "section", "article", "aside", "header", "footer", "nav",
    "figure", "figcaption", "table", "tr", "td", "th", "dl", "dt", "dd",
    "blockquote", "pre", "ul", "ol", "li", "hr", "body",
    "h1", "h2", "h3", "h4", "h5", "h6", "br", "img", "image",
}
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
HIDDEN_TAGS = ["head", "script", "style", "title"]

ROW_MARKER_RE = re.compile(r"^(?:#{1,6} |\* |\d+\. )")

ABBREVIATIONS = frozenset([
    "mr", "mrs", "ms", "dr", "st", "sr", "jr", "prof", "gen", "gov",
    "sgt", "cpl", "pvt", "lt", "col", "maj", "capt", "cmdr", "adm",
    "rev", "hon", "pres", "vs", "etc", "approx", "dept", "est",
    "vol", "fig", "inc", "corp", "ltd", "no",
])


def clamp_width(width):
    """Coerce a requested text width to an int no smaller than MIN_WIDTH."""
    try:
        width = int(width)
    except (TypeError, ValueError):
        return DEFAULT_WIDTH
    return max(width, MIN_WIDTH)


def text_width_for_terminal(columns, preferred=DEFAULT_WIDTH):
    """Text width for a terminal of `columns`, keeping a margin on both sides."""
    columns = int(columns)
    if columns <= MIN_WIDTH:
        padding = 0
    else:
        padding = max((columns - preferred) // 2, MIN_TERMINAL_PADDING)
    return clamp_width(min(max(columns - padding * 2, MIN_WIDTH), columns))


# =============================================================================
# CONFIGURATION
# =============================================================================

def _to_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class Settings:
    """Reader settings. Values may come from a string-valued state dict."""

    fields = ("width", "page_height", "seamless", "chunk_min", "chunk_max")

    def __init__(self, width=DEFAULT_WIDTH, page_height=DEFAULT_PAGE_HEIGHT,
                 seamless=False, chunk_min=CHUNK_MIN_LEN, chunk_max=CHUNK_MAX_LEN):
        self.width = clamp_width(width)
        self.page_height = max(_to_int(page_height, DEFAULT_PAGE_HEIGHT), 0)
        self.seamless = _to_bool(seamless)
        self.chunk_min = max(_to_int(chunk_min, CHUNK_MIN_LEN), 0)
        self.chunk_max = max(_to_int(chunk_max, CHUNK_MAX_LEN), self.chunk_min)

    @classmethod
    def from_dict(cls, data):
        known = {k: v for k, v in (data or {}).items() if k in cls.fields}
        return cls(**known)

    def as_dict(self):
        return {k: str(getattr(self, k)) for k in self.fields}

    def page_height_for_breaks(self):
        if self.seamless or self.page_height <= 0:
            return None
        return self.page_height

    def __repr__(self):
        return "Settings({})".format(
            ", ".join("{}={!r}".format(k, getattr(self, k)) for k in self.fields))


# =============================================================================
# DATA MODEL
# =============================================================================

InlineStyle = namedtuple("InlineStyle", "row col length style")
LinkEntry = namedtuple("LinkEntry", "row href label target_row", defaults=(None,))
TocEntry = namedtuple("TocEntry", "label section content_index")
ImageEntry = namedtuple("ImageEntry", "row src path description")
SpeechChunk = namedtuple("SpeechChunk", "text first_row highlights")
TaskResult = namedtuple("TaskResult", "ok value")


class ReadingState(namedtuple("ReadingState", "chapter_index text_width row rel_pctg")):
    """Where the reader is, in the shape the state file stores it."""
    __slots__ = ()

    def as_dict(self):
        # state files keep every value as a string
        return {
            "index": str(self.chapter_index),
            "width": str(self.text_width),
            "pos": str(self.row),
            "pctg": str(self.rel_pctg),
        }

    @classmethod
    def from_dict(cls, data):
        try:
            pctg = float(data.get("pctg") or 0)
        except ValueError:
            pctg = 0.0
        return cls(_to_int(data.get("index"), 0), clamp_width(data.get("width")),
                   _to_int(data.get("pos"), 0), pctg)


class LinkTarget(namedtuple("LinkTarget", "kind row href")):
    __slots__ = ()

    INTERNAL = "internal"
    EXTERNAL = "external"
    HERE = "here"
    UNRESOLVABLE = "unresolvable"

    @property
    def is_internal(self):
        return self.kind == self.INTERNAL


class DocumentStructure:
    """Rows of laid-out text plus the side tables that point into them.

    Every row number held in the tables is a valid index into `lines`.
    """

    def __init__(self, lines=None, image_rows=None, anchor_rows=None,
                 emphasis_spans=None, link_spans=None, pagebreak_rows=None,
                 code_rows=None, marker_rows=None):
        self.lines = tuple(lines) if lines else ("",)
        self.image_rows = dict(image_rows or {})
        self.anchor_rows = dict(anchor_rows or {})
        self.emphasis_spans = list(emphasis_spans or [])
        self.link_spans = list(link_spans or [])
        self.pagebreak_rows = sorted(set(pagebreak_rows or ()))
        self.code_rows = dict(code_rows or {})
        # row -> column where the text starts after a heading or list marker
        self.marker_rows = dict(marker_rows or {})

    def __len__(self):
        return len(self.lines)

    def _key(self):
        return (self.lines, self.image_rows, self.anchor_rows, self.emphasis_spans,
                self.link_spans, self.pagebreak_rows, self.code_rows, self.marker_rows)

    def __eq__(self, other):
        if not isinstance(other, DocumentStructure):
            return NotImplemented
        return self._key() == other._key()

    __hash__ = None

    def __repr__(self):
        return "<{} {} rows>".format(type(self).__name__, len(self.lines))

    def shifted(self, offset):
        """Same structure with every row moved down by `offset`."""
        return DocumentStructure(
            self.lines,
            {row + offset: src for row, src in self.image_rows.items()},
            {aid: row + offset for aid, row in self.anchor_rows.items()},
            [s._replace(row=s.row + offset) for s in self.emphasis_spans],
            [link._replace(row=link.row + offset) for link in self.link_spans],
            [row + offset for row in self.pagebreak_rows],
            {row + offset: lang for row, lang in self.code_rows.items()},
            {row + offset: col for row, col in self.marker_rows.items()},
        )

    def with_padding(self, rows):
        """Append chapter break rows, recording them as page break rows."""
        if not rows:
            return self
        first = len(self.lines)
        return DocumentStructure(
            self.lines + tuple(rows), self.image_rows, self.anchor_rows,
            self.emphasis_spans, self.link_spans,
            list(self.pagebreak_rows) + list(range(first, first + len(rows))),
            self.code_rows, self.marker_rows,
        )


class Document(DocumentStructure):
    """The whole book: concatenated chapters with their start rows."""

    def __init__(self, lines=None, chapter_start_rows=None, chapter_anchors=None, **tables):
        DocumentStructure.__init__(self, lines, **tables)
        self.chapter_start_rows = list(chapter_start_rows or [0])
        self.chapter_anchors = list(chapter_anchors or [{}])

    def _key(self):
        return DocumentStructure._key(self) + (self.chapter_start_rows,)

    def get_line(self, row):
        if 0 <= row < len(self.lines):
            return self.lines[row]
        return ""

    def chapter_index_for_row(self, row):
        index = bisect.bisect_right(self.chapter_start_rows, row) - 1
        return max(index, 0)

    def chapter_bounds(self, index):
        """(first row, one past last row) of chapter `index`, padding included."""
        start = self.chapter_start_rows[index]
        if index + 1 < len(self.chapter_start_rows):
            return start, self.chapter_start_rows[index + 1]
        return start, len(self.lines)

    def chapter_end(self, index):
        """Last row of chapter `index` that is not break padding."""
        start, end = self.chapter_bounds(index)
        breaks = set(self.pagebreak_rows)
        row = end - 1
        while row > start and row in breaks:
            row -= 1
        return row

    def find_chapter_end(self, row):
        return self.chapter_end(self.chapter_index_for_row(row))

    def links_in_range(self, start, end):
        return [link for link in self.link_spans if start <= link.row < end]

    def footnotes_in_range(self, start, end):
        return [link for link in self.links_in_range(start, end) if is_footnote_link(link)]


# =============================================================================
# MARKUP TO TEXT
# =============================================================================

def preprocess_inline_annotations(markup):
    """Turn <sup>x</sup> into ^{x} and <sub>x</sub> into _{x}."""
    markup = re.sub(r"(?i)<sup\b[^>]*>", "^{", markup)
    markup = re.sub(r"(?i)</sup\s*>", "}", markup)
    markup = re.sub(r"(?i)<sub\b[^>]*>", "_{", markup)
    return re.sub(r"(?i)</sub\s*>", "}", markup)


def image_label(src, alt=None, title=None):
    """Visible label of an image placeholder: title, else alt, else file name."""
    if title and title.strip():
        return " ".join(title.split())
    if alt and alt.strip() and alt.strip().lower() not in ("image", "img"):
        return " ".join(alt.split())
    return posixpath.basename(src.rstrip("/")) or src


def fit_placeholder(text, width):
    if len(text) <= width:
        return text
    return text[:width - 4] + "...]"


def detect_language(code_text, hint=None):
    """Name the language of a code block, trying a class hint first."""
    if hint:
        try:
            return get_lexer_by_name(hint).name
        except ClassNotFound:
            pass
    if not code_text.strip():
        return TextLexer.name
    try:
        return guess_lexer(code_text).name
    except ClassNotFound:
        return TextLexer.name


class HyphenatingWrapper(textwrap.TextWrapper):
    """TextWrapper that splits over-long words with a trailing hyphen.

    A cut piece plus its "-" fills the rest of the row exactly, and at least
    MIN_HYPHEN_PREFIX characters stay in front of the hyphen.
    """

    def __init__(self, width, **kwargs):
        kwargs.setdefault("break_long_words", True)
        kwargs.setdefault("break_on_hyphens", True)
        textwrap.TextWrapper.__init__(self, width, **kwargs)

    def _handle_long_word(self, reversed_chunks, cur_line, cur_len, width):
        space_left = max(width - cur_len, 1)
        chunk = reversed_chunks[-1]
        if space_left <= MIN_HYPHEN_PREFIX:
            if cur_line:
                # not enough room here, start the word on the next row
                return
            cur_line.append(chunk[:space_left])
            reversed_chunks[-1] = chunk[space_left:]
            return
        cut = space_left - 1
        cur_line.append(chunk[:cut] + "-")
        reversed_chunks[-1] = chunk[cut:]


def wrap_block(text, width, initial_indent="", subsequent_indent=""):
    """Wrap one block of text; "\\n" inside the block forces a new row."""
    # indentation never takes more than half of the row
    limit = width // 2
    initial_indent = initial_indent[-limit:] if len(initial_indent) > limit else initial_indent
    subsequent_indent = subsequent_indent[-limit:] if len(subsequent_indent) > limit else subsequent_indent
    wrapper = HyphenatingWrapper(width, initial_indent=initial_indent,
                                 subsequent_indent=subsequent_indent)
    rows = []
    for segment in text.split("\n"):
        segment = segment.strip()
        if not segment:
            continue
        if rows:
            wrapper.initial_indent = subsequent_indent
        rows.extend(row.rstrip() for row in wrapper.wrap(segment))
    return rows


class HTMLtoLines(HTMLParser):
    para = {"p", "div", "section", "article", "aside", "header", "footer",
            "nav", "figure", "figcaption", "table", "tr", "dl", "hr", "body"}
    inde = {"dt", "dd", "blockquote"}
    pref = {"pre"}
    bull = {"li"}
    lists = {"ul", "ol"}
    cell = {"td", "th"}
    hide = set(HIDDEN_TAGS)

    def __init__(self):
        HTMLParser.__init__(self)
        self.text = [""]
        self.imgs = []
        self.hidden = 0
        self.head_level = 0
        self.inde_depth = 0
        self.ispref = False
        self.code_hint = None
        self.list_stack = []   # [tag, items seen]
        self.li_stack = []     # marker width of each open <li>
        self.pending_bullet = None
        self.idhead = {}       # block -> heading level
        self.idinde = {}       # block -> quote depth
        self.idbull = {}       # block -> (marker, list depth)
        self.idpref = {}       # block -> language hint
        self.idimg = {}        # block -> image source
        self.code_rows = {}
        self.image_rows = {}
        self.marker_rows = {}

    def _break(self):
        if self.text[-1] != "":
            self.text.append("")

    @staticmethod
    def _language_hint(attrs):
        for name, value in attrs:
            if name == "class" and value:
                for class_name in value.split():
                    if class_name.startswith(("language-", "lang-")):
                        return class_name.split("-", 1)[1]
        return None

    def handle_starttag(self, tag, attrs):
        if tag in self.hide:
            self.hidden += 1
            return
        if self.hidden:
            return

        if re.match("h[1-6]$", tag) is not None:
            self._break()
            self.head_level = int(tag[1])
        elif tag in self.para:
            self._break()
        elif tag in self.inde:
            self._break()
            self.inde_depth += 1
        elif tag in self.pref:
            self._break()
            self.ispref = True
            self.code_hint = self._language_hint(attrs)
        elif tag == "code" and self.ispref and self.code_hint is None:
            self.code_hint = self._language_hint(attrs)
        elif tag in self.lists:
            self._break()
            self.list_stack.append([tag, 0])
        elif tag in self.bull:
            self._break()
            if self.list_stack:
                self.list_stack[-1][1] += 1
                kind, count = self.list_stack[-1]
            else:
                kind, count = "ul", 1
            self.pending_bullet = "{}. ".format(count) if kind == "ol" else "* "
            self.li_stack.append(len(self.pending_bullet))
        elif tag in self.cell:
            if self.text[-1] and not self.text[-1].endswith(" "):
                self.text[-1] += " "
        elif tag == "br":
            self.text[-1] += "\n"
        # NOTE: "img" and "image"
        # In HTML, both are startendtag (no need endtag)
        # but in XHTML both need endtag
        elif tag in {"img", "image"}:
            img_src = None
            img_alt = img_title = None
            for i in attrs:
                if i[1] is None:
                    continue
                if (tag == "img" and i[0] == "src")\
                   or (tag == "image" and i[0].endswith("href")):
                    img_src = unquote(i[1])
                elif i[0] == "alt":
                    img_alt = i[1]
                elif i[0] == "title":
                    img_title = i[1]
            if img_src:
                self._break()
                self.text[-1] = "{} {}]".format(IMAGE_PREFIX, image_label(img_src, img_alt, img_title))
                self.idimg[len(self.text)-1] = img_src
                self.imgs.append(img_src)
                self.text.append("")

    def handle_endtag(self, tag):
        if tag in self.hide:
            self.hidden = max(self.hidden - 1, 0)
            return
        if self.hidden:
            return

        if re.match("h[1-6]$", tag) is not None:
            self._break()
            self.head_level = 0
        elif tag in self.para:
            self._break()
        elif tag in self.inde:
            self._break()
            self.inde_depth = max(self.inde_depth - 1, 0)
        elif tag in self.pref:
            self._break()
            self.ispref = False
            self.code_hint = None
        elif tag in self.lists:
            self._break()
            if self.list_stack:
                self.list_stack.pop()
        elif tag in self.bull:
            self._break()
            if self.li_stack:
                self.li_stack.pop()
            self.pending_bullet = None

    def handle_data(self, raw):
        if not raw or self.hidden:
            return
        if self.ispref:
            data = raw.lstrip("\n") if self.text[-1] == "" else raw
        else:
            data = re.sub(r"\s+", " ", raw)
            if self.text[-1] == "" or self.text[-1].endswith((" ", "\n")):
                data = data.lstrip()
        if not data:
            return

        self.text[-1] += data
        n = len(self.text)-1
        if self.head_level:
            self.idhead.setdefault(n, self.head_level)
        elif self.ispref:
            self.idpref.setdefault(n, self.code_hint)
        elif self.li_stack:
            if n not in self.idbull:
                marker = self.pending_bullet or " " * self.li_stack[-1]
                self.idbull[n] = (marker, len(self.li_stack) - 1)
                self.pending_bullet = None
        elif self.inde_depth:
            self.idinde.setdefault(n, self.inde_depth)

    def _pre_lines(self, block, width):
        rows = []
        for raw in block.expandtabs(4).split("\n"):
            raw = raw.rstrip()
            while len(raw) > width:
                rows.append(raw[:width])
                raw = raw[width:]
            rows.append(raw)
        while rows and not rows[0].strip():
            rows.pop(0)
        while rows and not rows[-1].strip():
            rows.pop()
        return rows

    def get_lines(self, width=DEFAULT_WIDTH):
        """Wrap the collected blocks into rows no wider than `width`."""
        width = clamp_width(width)
        lines = []
        self.code_rows = {}
        self.image_rows = {}
        self.marker_rows = {}
        prev_bullet = False
        for n, block in enumerate(self.text):
            prefix = ""
            if n in self.idpref:
                rendered = self._pre_lines(block, width)
            elif not block.strip():
                continue
            elif n in self.idimg:
                rendered = [fit_placeholder(block, width)]
            elif n in self.idhead:
                prefix = "#" * self.idhead[n] + " "
                rendered = wrap_block(block, width, prefix, " " * len(prefix))
            elif n in self.idbull:
                marker, depth = self.idbull[n]
                indent = "  " * depth
                prefix = indent + marker
                rendered = wrap_block(block, width, prefix, indent + " " * len(marker))
            elif n in self.idinde:
                indent = "   " * self.idinde[n]
                rendered = wrap_block(block, width, indent, indent)
            else:
                rendered = wrap_block(block, width)
            if not rendered:
                continue

            # consecutive list items sit on adjacent rows
            is_bullet = n in self.idbull
            if lines and not (is_bullet and prev_bullet):
                lines.append("")
            if n in self.idpref:
                lang = detect_language("\n".join(rendered), self.idpref[n])
                for row in range(len(lines), len(lines) + len(rendered)):
                    self.code_rows[row] = lang
            elif n in self.idimg:
                self.image_rows[len(lines)] = self.idimg[n]
            elif prefix.strip():
                # wrap_block keeps at most half the width of a long prefix
                self.marker_rows[len(lines)] = min(len(prefix), width // 2)
            lines.extend(rendered)
            prev_bullet = is_bullet

        return lines or [""]


# =============================================================================
# STRUCTURE CORRELATION
# =============================================================================

def _is_text(piece):
    # comments, doctypes and script/style bodies are NavigableString subclasses
    return type(piece) is NavigableString


def rendered_text(node):
    """Whitespace-normalised text of a node as the extractor would show it."""
    if _is_text(node):
        return " ".join(str(node).split())
    parts = []
    for piece in node.descendants:
        if _is_text(piece):
            if piece.find_parent(HIDDEN_TAGS) is None:
                parts.append(str(piece))
        elif isinstance(piece, Tag) and piece.name in BLOCK_TAGS:
            parts.append(" ")
    return " ".join("".join(parts).split())


def following_text(node):
    """Text of the first non-blank string after `node` in document order."""
    piece = node.find_next(string=lambda s: _is_text(s) and s.strip())
    if piece is None:
        return ""
    return " ".join(str(piece).split())


class StructureCorrelator:
    """Places markup nodes on the rows the extractor produced.

    The extractor only hands back plain rows, so each node is located by
    searching the rows for its text. This is approximate: repeated text
    resolves to its first occurrence. A layout engine that knows where it
    put each node can subclass this and override the find_* methods.
    """

    def __init__(self, logger=None):
        self.logger = logger or LOG

    def correlate(self, markup, lines, code_rows=None, image_rows=None, marker_rows=None):
        """Structure for `lines`.

        Image and marker rows the extractor already knows are taken as
        they are; image rows are searched for only when none are given.
        """
        lines = list(lines) or [""]
        try:
            soup = BeautifulSoup(markup, "html.parser")
            if image_rows is None:
                image_rows = self.find_images(soup, lines)
            return DocumentStructure(
                lines,
                image_rows=image_rows,
                anchor_rows=self.find_anchors(soup, lines),
                emphasis_spans=self.find_emphasis(soup, lines),
                link_spans=self.find_links(soup, lines),
                code_rows=code_rows,
                marker_rows=marker_rows,
            )
        except Exception as e:
            self.logger.warning("Could not correlate structure, keeping plain rows: %s", e)
            return DocumentStructure(lines, image_rows=image_rows, code_rows=code_rows,
                                     marker_rows=marker_rows)

    def find_row(self, text, lines):
        """First row sharing a word window with `text`, or None."""
        words = text.split()
        if not words:
            return None
        tried = set()
        for skip, take in WORD_WINDOWS:
            needle = " ".join(words[skip:skip + take])
            if len(needle) < MIN_NEEDLE_LEN or needle in tried:
                continue
            tried.add(needle)
            for row, line in enumerate(lines):
                if needle in line:
                    return row

        needle = " ".join(words)
        for row, line in enumerate(lines):
            content = ROW_MARKER_RE.sub("", line.strip())
            if needle in line:
                return row
            if len(content) >= MIN_REVERSE_MATCH and content in needle:
                return row
        return None

    def find_images(self, soup, lines):
        sources = []
        for node in soup.find_all(["img", "image"]):
            if node.find_parent(HIDDEN_TAGS) is not None:
                continue
            if node.name == "img":
                src = node.get("src")
            else:
                src = next((v for k, v in node.attrs.items() if k.endswith("href")), None)
            if src:
                sources.append(unquote(src))

        image_rows = {}
        sources = iter(sources)
        for row, line in enumerate(lines):
            if line.startswith(IMAGE_PREFIX):
                src = next(sources, None)
                if src is None:
                    break
                image_rows[row] = src
        return image_rows

    def find_anchors(self, soup, lines):
        anchor_rows = {}
        last_row = len(lines) - 1
        for node in soup.find_all(id=True):
            anchor_id = node.get("id")
            if not anchor_id or anchor_id in anchor_rows:
                continue
            if node.find_parent(HIDDEN_TAGS) is not None or node.name in HIDDEN_TAGS:
                continue
            text = rendered_text(node) or following_text(node)
            row = self.find_row(text, lines) if text else None
            if row is None:
                self.logger.debug("Anchor %r not found in rows, using last row", anchor_id)
                row = last_row
            anchor_rows[anchor_id] = row
        return anchor_rows

    def locate_text(self, text, lines, style):
        for row, line in enumerate(lines):
            col = line.find(text)
            if col >= 0:
                return [InlineStyle(row, col, len(text), style)]

        # text wrapped onto a second row
        words = text.split(" ")
        for row in range(len(lines) - 1):
            line = lines[row].rstrip()
            following = lines[row + 1].lstrip()
            indent = len(lines[row + 1]) - len(following)
            for cut in range(len(words) - 1, 0, -1):
                head = " ".join(words[:cut])
                tail = " ".join(words[cut:])
                if line.endswith(head) and following.startswith(tail):
                    return [InlineStyle(row, len(line) - len(head), len(head), style),
                            InlineStyle(row + 1, indent, len(tail), style)]
        return []

    def find_emphasis(self, soup, lines):
        spans = []
        for node in soup.find_all(HEADING_TAGS):
            row = self.find_row(rendered_text(node), lines)
            if row is not None and lines[row]:
                spans.append(InlineStyle(row, 0, len(lines[row]), BOLD))
        for style, tags in ((BOLD, ["strong", "b"]), (ITALIC, ["em", "i"])):
            for node in soup.find_all(tags):
                text = rendered_text(node)
                if text:
                    spans.extend(self.locate_text(text, lines, style))
        return spans

    @staticmethod
    def is_footnote_backlink(node, href, label):
        """Short fragment links inside a footnote body point back to the text."""
        if node.get("epub:type") == "noteref" or not href.startswith("#"):
            return False
        in_footnote = node.find_parent(
            lambda tag: "footnote" in (tag.get("epub:type") or "").split())
        return in_footnote is not None and len(label) <= 4

    def find_links(self, soup, lines):
        links = []
        last_row = len(lines) - 1
        for node in soup.find_all("a", href=True):
            href = node.get("href", "").strip()
            if not href:
                continue
            label = rendered_text(node)
            if self.is_footnote_backlink(node, href, label):
                continue
            row = self.find_row(label or href, lines)
            if row is None:
                row = last_row
            links.append(LinkEntry(row, href, label or href))
        return links


def layout_chapter(markup, width=DEFAULT_WIDTH, correlator=None, logger=None):
    """Lay out one chapter's markup at `width` into a DocumentStructure."""
    log = logger or LOG
    width = clamp_width(width)
    markup = preprocess_inline_annotations(markup or "")
    parser = HTMLtoLines()
    try:
        parser.feed(markup)
        parser.close()
    except Exception as e:
        log.warning("Markup only partly parsed: %s", e)
    lines = parser.get_lines(width)
    correlator = correlator or StructureCorrelator(logger=log)
    return correlator.correlate(markup, lines, code_rows=parser.code_rows,
                                image_rows=parser.image_rows, marker_rows=parser.marker_rows)


# =============================================================================
# CHAPTER ASSEMBLY
# =============================================================================

def build_chapter_break(page_height, total_lines, width=DEFAULT_WIDTH):
    """Rows that pad `total_lines` up to the next multiple of `page_height`.

    The middle padding row carries the break marker centred on `width`.
    """
    if not page_height or page_height <= 0:
        return []
    pad = (page_height - total_lines % page_height) % page_height
    if pad == 0:
        return []
    rows = [""] * pad
    rows[pad // 2] = CHAPTER_BREAK_MARKER.center(clamp_width(width)).rstrip()
    return rows


class ChapterLayout:
    """A chapter's structure together with the width it was laid out at."""

    def __init__(self, structure, width):
        self.structure = structure
        self.width = width

    def __repr__(self):
        return "<ChapterLayout width={} rows={}>".format(self.width, len(self.structure))


def assemble(layouts, page_height=None, logger=None):
    """Concatenate chapter layouts into one Document.

    Every chapter except the last is padded so the next one starts on a
    page boundary. Anchor ids that occur in several chapters keep the
    first chapter's row in the flat table.
    """
    log = logger or LOG
    lines = []
    starts = []
    chapter_anchors = []
    tables = {"image_rows": {}, "anchor_rows": {}, "emphasis_spans": [],
              "link_spans": [], "pagebreak_rows": [], "code_rows": {}, "marker_rows": {}}
    last = len(layouts) - 1
    for index, layout in enumerate(layouts):
        structure = layout.structure
        offset = len(lines)
        if page_height and index < last:
            structure = structure.with_padding(
                build_chapter_break(page_height, offset + len(structure), layout.width))
        structure = structure.shifted(offset)

        starts.append(offset)
        lines.extend(structure.lines)
        tables["image_rows"].update(structure.image_rows)
        tables["emphasis_spans"].extend(structure.emphasis_spans)
        tables["link_spans"].extend(structure.link_spans)
        tables["pagebreak_rows"].extend(structure.pagebreak_rows)
        tables["code_rows"].update(structure.code_rows)
        tables["marker_rows"].update(structure.marker_rows)
        chapter_anchors.append(structure.anchor_rows)
        for anchor_id, row in structure.anchor_rows.items():
            if anchor_id in tables["anchor_rows"]:
                log.debug("Anchor %r repeated in chapter %d, keeping the first", anchor_id, index)
                continue
            tables["anchor_rows"][anchor_id] = row

    return Document(lines, chapter_start_rows=starts, chapter_anchors=chapter_anchors, **tables)


# =============================================================================
# LINKS
# =============================================================================

def is_external_link(href):
    return href.strip().lower().startswith(EXTERNAL_SCHEMES)


def is_footnote_link(link):
    """Fragment links to note-like ids, or with a number in the label."""
    href = link.href.strip()
    if is_external_link(href):
        return False
    fragment = href.partition("#")[2].lower()
    if not fragment:
        return False
    if fragment.startswith(FOOTNOTE_PREFIXES):
        return True
    return re.search(r"[0-9]", link.label) is not None


def resolve_relative_href(href, base=None):
    """Join `href` onto the directory of the chapter path `base`."""
    href = unquote(href.strip())
    if not href:
        return None
    if href.startswith("/"):
        return href.lstrip("/")
    if base is None:
        return None
    parts = []
    for part in posixpath.join(posixpath.dirname(base), href).split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


class LinkResolver:
    """Turns an href found in the book into a row of the combined document."""

    def __init__(self, document, chapter_paths, logger=None):
        self.document = document
        self.chapter_paths = [unquote(p) for p in chapter_paths]
        self.logger = logger or LOG

    def chapter_for_path(self, path):
        if not path:
            return None
        path = unquote(path).lstrip("/")
        if path in self.chapter_paths:
            return self.chapter_paths.index(path)
        for index, candidate in enumerate(self.chapter_paths):
            if candidate.endswith("/" + path):
                return index
        return None

    def _anchor_tables(self, chapter_index):
        tables = []
        if chapter_index is not None and 0 <= chapter_index < len(self.document.chapter_anchors):
            tables.append(self.document.chapter_anchors[chapter_index])
        tables.append(self.document.anchor_rows)
        return tables

    def resolve_anchor(self, fragment, chapter_index=None):
        """Row of anchor `fragment`, trying common footnote id spellings."""
        fragment = unquote(fragment)
        tables = self._anchor_tables(chapter_index)
        for table in tables:
            if fragment in table:
                return table[fragment]

        digits = re.sub(r"[^0-9]", "", fragment)
        if not digits:
            return None
        candidates = ["fn" + digits, "fn" + digits + "fn", "note" + digits,
                      "footnote" + digits, "endnote" + digits]
        for table in tables:
            for candidate in candidates:
                if candidate in table:
                    return table[candidate]
        for table in tables:
            for anchor_id, row in table.items():
                lowered = anchor_id.lower()
                if digits in lowered and lowered.startswith(FOOTNOTE_PREFIXES):
                    return row
        return None

    def resolve(self, href, origin_row=None, current_chapter=None):
        href = (href or "").strip()
        if not href:
            return LinkTarget(LinkTarget.UNRESOLVABLE, None, href)
        if is_external_link(href):
            return LinkTarget(LinkTarget.EXTERNAL, None, href)

        owner = current_chapter
        if origin_row is not None:
            owner = self.document.chapter_index_for_row(origin_row)

        if href.startswith("#"):
            row = self.resolve_anchor(href[1:], owner) if href[1:] else None
            if row is None:
                self.logger.debug("Unresolved anchor %r", href)
                return LinkTarget(LinkTarget.UNRESOLVABLE, None, href)
            return LinkTarget(LinkTarget.INTERNAL, row, href)

        path, _, fragment = href.partition("#")
        base = None
        if owner is not None and 0 <= owner < len(self.chapter_paths):
            base = self.chapter_paths[owner]
        index = self.chapter_for_path(resolve_relative_href(path, base))
        if index is None:
            index = self.chapter_for_path(path)
        if index is None:
            self.logger.debug("No chapter for link %r", href)
            return LinkTarget(LinkTarget.UNRESOLVABLE, None, href)

        if fragment:
            row = self.resolve_anchor(fragment, index)
            if row is not None:
                return LinkTarget(LinkTarget.INTERNAL, row, href)
            if index == owner:
                return LinkTarget(LinkTarget.HERE, None, href)
        return LinkTarget(LinkTarget.INTERNAL, self.document.chapter_start_rows[index], href)


# =============================================================================
# READ-ALOUD CHUNKS
# =============================================================================

def is_sentence_end(text, i):
    """True if text[i] closes a sentence."""
    ch = text[i]
    if i + 1 < len(text) and not text[i + 1].isspace():
        return False
    if ch in "?!;":
        return True
    if ch != ".":
        return False
    j = i
    while j > 0 and text[j - 1].isalpha():
        j -= 1
    word = text[j:i]
    if len(word) == 1 and (j == 0 or not text[j - 1].isalnum()):
        return False  # an initial
    return word.lower() not in ABBREVIATIONS


def split_into_sentence_chunks(text, min_len=CHUNK_MIN_LEN, max_len=CHUNK_MAX_LEN):
    """Cut `text` at sentence ends into pieces of roughly min_len..max_len.

    Prefers the last sentence end that keeps a piece within bounds; with
    none available the piece runs on to the next sentence end.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_len:
        return [text]

    chunks = []
    start = 0
    n = len(text)
    while start < n:
        if n - start <= max_len:
            chunks.append(text[start:].strip())
            break
        split_at = None
        for i in range(start + min_len, min(start + max_len, n)):
            if is_sentence_end(text, i):
                split_at = i + 1
        if split_at is None:
            for i in range(max(start + max_len, start), n):
                if is_sentence_end(text, i):
                    split_at = i + 1
                    break
        end = split_at or n
        chunk = text[start:end].strip()
        if chunk:
            chunks.append(chunk)
        start = end
        while start < n and text[start].isspace():
            start += 1
    return chunks


def split_sentences(text):
    return split_into_sentence_chunks(text, 0, 0)


def speech_paragraphs(lines, skip_rows=()):
    """(start, end) row ranges of runs of speakable rows."""
    skip = set(skip_rows)
    paragraphs = []
    start = None
    for row, line in enumerate(lines):
        speakable = bool(line.strip()) and row not in skip
        if speakable:
            if start is None:
                start = row
        elif start is not None:
            paragraphs.append((start, row))
            start = None
    if start is not None:
        paragraphs.append((start, len(lines)))
    return paragraphs


def build_speech_chunks(lines, min_len=CHUNK_MIN_LEN, max_len=CHUNK_MAX_LEN, skip_rows=(),
                        marker_rows=None):
    """Read-aloud chunks with the column range each one covers on every row.

    `skip_rows` (image placeholders, break padding) are never read, and
    rows in `marker_rows` are read from the column given there, which
    leaves their heading or list marker out.
    """
    marker_rows = marker_rows or {}
    chunks = []
    for para_start, para_end in speech_paragraphs(lines, skip_rows):
        pieces = []
        pos = 0
        for row in range(para_start, para_end):
            line = lines[row].rstrip()
            body = line[marker_rows.get(row, 0):].lstrip()
            pieces.append((row, len(line) - len(body), body, pos))
            pos += len(body) + 1
        full = " ".join(piece[2] for piece in pieces)

        cursor = 0
        for text in split_into_sentence_chunks(full, min_len, max_len):
            begin = full.find(text, cursor)
            if begin < 0:
                begin = cursor
            end = begin + len(text)
            cursor = end
            highlights = {}
            for row, col, body, line_start in pieces:
                line_end = line_start + len(body)
                lo = max(begin, line_start)
                hi = min(end, line_end)
                if lo < hi:
                    highlights[row] = (col + lo - line_start, col + hi - line_start)
            first_row = min(highlights) if highlights else para_start
            chunks.append(SpeechChunk(text, first_row, highlights))
    return chunks


def find_chunk_at(chunks, row):
    """Index of the chunk to start reading from at `row`."""
    for index, chunk in enumerate(chunks):
        if row in chunk.highlights or chunk.first_row >= row:
            return index
    return None


# =============================================================================
# MISC HELPERS
# =============================================================================

def describe_image(data):
    """Short "FORMAT WxH" description of image bytes, or None."""
    try:
        with Image.open(BytesIO(data)) as img:
            return "{} {}x{}".format(img.format, img.width, img.height)
    except (OSError, ValueError) as e:
        LOG.debug("Unreadable image data: %s", e)
        return None


def find_matches(lines, pattern):
    """Row -> [(start, end), ...] for every match of `pattern`, case-insensitive.

    An invalid pattern matches nothing.
    """
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        LOG.debug("Invalid regex %r: %s", pattern, e)
        return {}
    found = {}
    for row, line in enumerate(lines):
        spans = [match.span() for match in regex.finditer(line) if match.end() > match.start()]
        if spans:
            found[row] = spans
    return found


class JumpHistory:
    """Back/forward list of rows visited by jumps."""

    def __init__(self, limit=JUMP_HISTORY_LIMIT):
        self.rows = []
        self.index = 0
        self.limit = limit

    def record(self, row):
        del self.rows[self.index:]
        if not self.rows or self.rows[-1] != row:
            self.rows.append(row)
            if len(self.rows) > self.limit:
                del self.rows[0]
        self.index = len(self.rows)

    def back(self, current_row):
        if not self.rows:
            return None
        if self.index == len(self.rows):
            if self.rows[-1] != current_row:
                self.rows.append(current_row)
            self.index = len(self.rows) - 1
        if self.index > 0:
            self.index -= 1
            return self.rows[self.index]
        return None

    def forward(self):
        if self.index + 1 < len(self.rows):
            self.index += 1
            return self.rows[self.index]
        return None

    def shift(self, start, delta):
        """Move rows at or after `start` by `delta` after a chapter changed length."""
        if delta:
            self.rows = [row + delta if row >= start else row for row in self.rows]


class BackgroundTask:
    """Run func(*args) on a worker thread and hand its result back by queue.

    Nothing but the return value crosses the thread boundary. The main loop
    calls poll(); cancel() drops the channel so a late result is discarded.
    """

    def __init__(self, func, *args, on_cancel=None, logger=None):
        self.func = func
        self.args = args
        self.on_cancel = on_cancel
        self.logger = logger or LOG
        self.channel = queue.Queue(maxsize=1)
        self.result = None
        self.thread = threading.Thread(target=self._run, args=(self.channel,), daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _run(self, channel):
        try:
            result = TaskResult(True, self.func(*self.args))
        except Exception as e:
            self.logger.warning("Background task failed: %s", e)
            result = TaskResult(False, e)
        channel.put(result)

    @property
    def cancelled(self):
        return self.channel is None

    def poll(self):
        """The TaskResult once finished, else None. Never blocks."""
        if self.channel is None:
            return None
        if self.result is None:
            try:
                self.result = self.channel.get_nowait()
            except queue.Empty:
                return None
        return self.result

    def wait(self, timeout=None):
        self.thread.join(timeout)
        return self.poll()

    def cancel(self):
        if self.channel is None:
            return
        self.channel = None
        if self.on_cancel is not None:
            self.on_cancel()


class ResizeDebouncer:
    """Turn a burst of terminal size changes into one reflow request."""

    def __init__(self, delay=RESIZE_DELAY):
        self.delay = delay
        self.timer = None
        self.last_size = None
        self.channel = queue.Queue()

    def notify(self, size):
        """Note the size seen by the main loop; True if a reflow got scheduled."""
        if size == self.last_size:
            return False
        first = self.last_size is None
        self.last_size = size
        if first:
            return False
        if self.timer is not None:
            self.timer.cancel()
        self.timer = threading.Timer(self.delay, self.channel.put, args=(size,))
        self.timer.daemon = True
        self.timer.start()
        return True

    def poll(self):
        """Latest settled size, or None."""
        size = None
        while True:
            try:
                size = self.channel.get_nowait()
            except queue.Empty:
                return size

    def cancel(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


# =============================================================================
# BOOK SOURCE
# =============================================================================

class MemoryBook:
    """Chapters, resources and table of contents held in memory.

    Chapter paths double as chapter ids and are resolved against each
    other like paths inside a book container.
    """

    def __init__(self, chapters, resources=None, toc_entries=None, metadata=None, root=None):
        chapters = list(chapters)
        self.contents = [path for path, _ in chapters]
        self.markup = dict(chapters)
        self.resources = dict(resources or {})
        self.toc_entries = list(toc_entries or [])
        self.metadata = dict(metadata or {})
        self.root = root

    def get_raw_text(self, chapter_id):
        return self.markup[chapter_id]

    def get_resource(self, path):
        """(mime type, bytes) of a resource inside the book."""
        if path in self.resources:
            data = self.resources[path]
        elif self.root is not None:
            with open(os.path.join(self.root, *path.split("/")), "rb") as f:
                data = f.read()
        else:
            raise KeyError(path)
        return mimetypes.guess_type(path)[0] or "application/octet-stream", data

    @classmethod
    def from_files(cls, paths):
        files = []
        for path in paths:
            if os.path.isdir(path):
                for name in sorted(os.listdir(path)):
                    if name.lower().endswith(CHAPTER_EXTENSIONS):
                        files.append(os.path.join(path, name))
            else:
                files.append(path)
        if not files:
            return cls([])

        files = [os.path.abspath(f) for f in files]
        root = os.path.commonpath([os.path.dirname(f) for f in files])
        chapters = []
        for f in files:
            with open(f, encoding="utf-8", errors="replace") as fp:
                chapters.append((os.path.relpath(f, root).replace(os.sep, "/"), fp.read()))
        return cls(chapters, metadata={"source": root}, root=root)


# =============================================================================
# REFLOW
# =============================================================================

class ReflowCoordinator:
    """Keeps the per-chapter layout cache and the reader's position.

    Only the chapter being read is laid out again on a width change; the
    others keep their old layout until the reader moves into them.
    """

    def __init__(self, book, settings=None, correlator=None, logger=None):
        self.book = book
        self.settings = settings or Settings()
        self.logger = logger or LOG
        self.correlator = correlator or StructureCorrelator(logger=self.logger)
        self.width = self.settings.width
        self.row = 0
        self.layouts = []
        self.document = Document()
        self.history = JumpHistory()

    def layout(self, index, width):
        chapter_id = self.book.contents[index]
        try:
            markup = self.book.get_raw_text(chapter_id)
        except (KeyError, OSError, UnicodeDecodeError) as e:
            self.logger.warning("Chapter %r could not be read: %s", chapter_id, e)
            markup = ""
        return ChapterLayout(layout_chapter(markup, width, self.correlator, self.logger), width)

    def recombine(self):
        self.document = assemble(self.layouts, self.settings.page_height_for_breaks(), self.logger)
        return self.document

    def load(self, width=None, row=0):
        """Lay out every chapter at `width` and place the reader at `row`."""
        if width is not None:
            self.width = clamp_width(width)
        self.layouts = [self.layout(i, self.width) for i in range(len(self.book.contents))]
        self.recombine()
        self.row = self.clamp_row(row)
        return self.document

    def restore(self, state):
        """Load at a saved ReadingState's width and row.

        A row that no longer falls inside the saved chapter (the book
        changed since) is replaced by that chapter's first row.
        """
        self.load(state.text_width, state.row)
        if not self.layouts:
            return self.row
        index = min(max(state.chapter_index, 0), len(self.layouts) - 1)
        if self.document.chapter_index_for_row(self.row) != index:
            self.row = self.document.chapter_start_rows[index]
        return self.row

    def clamp_row(self, row):
        return min(max(_to_int(row, 0), 0), len(self.document.lines) - 1)

    def position(self, row=None):
        """(chapter index, offset into that chapter) of `row`."""
        row = self.row if row is None else row
        index = self.document.chapter_index_for_row(row)
        return index, row - self.document.chapter_start_rows[index]

    def _place(self, index, offset):
        start, end = self.document.chapter_bounds(index)
        self.row = start + min(offset, max(end - start - 1, 0))
        return self.row

    def refresh_chapter(self, index):
        """Lay chapter `index` out again if its width is stale.

        Returns the chapter's (old, new) row count, padding included, or
        None when it was already at the current width. Rows kept in the
        jump history that follow the chapter move with it.
        """
        if not self.layouts or self.layouts[index].width == self.width:
            return None
        start, end = self.document.chapter_bounds(index)
        self.logger.debug("Reflowing chapter %d at width %d", index, self.width)
        self.layouts[index] = self.layout(index, self.width)
        self.recombine()
        new_start, new_end = self.document.chapter_bounds(index)
        self.history.shift(end, (new_end - new_start) - (end - start))
        return end - start, new_end - new_start

    def ensure_current_width(self):
        """Re-lay out the chapter under the reader if its width is stale."""
        if not self.layouts:
            return self.row
        index, offset = self.position()
        self.refresh_chapter(index)
        return self._place(index, offset)

    def set_width(self, width):
        self.width = clamp_width(width)
        return self.ensure_current_width()

    def resize(self, columns):
        return self.set_width(text_width_for_terminal(columns, self.settings.width))

    def set_page_height(self, page_height):
        index, offset = self.position()
        self.settings.page_height = max(_to_int(page_height, DEFAULT_PAGE_HEIGHT), 0)
        self.recombine()
        return self._place(index, offset)

    def set_seamless(self, seamless):
        index, offset = self.position()
        self.settings.seamless = _to_bool(seamless)
        self.recombine()
        return self._place(index, offset)

    def goto(self, row, anchor=None):
        """Move to `row` of the document as it is laid out now.

        A row in a chapter still laid out at an older width keeps its
        relative place in that chapter once the chapter is reflowed, or
        lands on `anchor` when that id is given and found there.
        """
        index, offset = self.position(self.clamp_row(row))
        sizes = self.refresh_chapter(index)
        if sizes is None:
            return self._place(index, offset)
        if anchor is not None:
            found = self.document.chapter_anchors[index].get(anchor)
            if found is not None:
                self.row = found
                return self.row
        old, new = sizes
        return self._place(index, offset * new // max(old, 1))

    def jump(self, row, anchor=None):
        """goto() that can be undone with back()."""
        self.history.record(self.row)
        return self.goto(row, anchor)

    def back(self):
        row = self.history.back(self.row)
        return self.row if row is None else self.goto(row)

    def forward(self):
        row = self.history.forward()
        return self.row if row is None else self.goto(row)

    def next_chapter(self):
        index, _ = self.position()
        if index + 1 < len(self.document.chapter_start_rows):
            return self.goto(self.document.chapter_start_rows[index + 1])
        return self.row

    def previous_chapter(self):
        index, offset = self.position()
        if offset > 0:
            return self.goto(self.document.chapter_start_rows[index])
        if index > 0:
            return self.goto(self.document.chapter_start_rows[index - 1])
        return self.row

    def reading_state(self):
        index, _ = self.position()
        total = len(self.document.lines)
        return ReadingState(index, self.width, self.row, round(self.row / total, 4) if total else 0.0)

    def resolver(self):
        return LinkResolver(self.document, self.book.contents, self.logger)

    def links(self, start=None, end=None):
        """Links of the document (or of rows start..end) with their target rows."""
        resolver = self.resolver()
        spans = self.document.link_spans
        if start is not None:
            spans = self.document.links_in_range(start, len(self.document.lines) if end is None else end)
        return [link._replace(target_row=resolver.resolve(link.href, link.row).row)
                for link in spans]

    def follow(self, link):
        """Jump to where `link` leads; the returned target is in current rows."""
        owner = self.document.chapter_index_for_row(link.row)
        target = self.resolver().resolve(link.href, current_chapter=owner)
        if target.is_internal:
            self.history.record(self.row)
            if self.refresh_chapter(self.document.chapter_index_for_row(target.row)):
                target = self.resolver().resolve(link.href, current_chapter=owner)
            self.goto(target.row)
        return target

    def toc_row(self, entry):
        """Row a table-of-contents entry leads to."""
        index = min(max(entry.content_index, 0), len(self.document.chapter_start_rows) - 1)
        if entry.section:
            row = self.document.chapter_anchors[index].get(entry.section)
            if row is not None:
                return row
        return self.document.chapter_start_rows[index]

    def open_toc_entry(self, entry):
        return self.jump(self.toc_row(entry), entry.section)

    def images(self):
        entries = []
        for row, src in sorted(self.document.image_rows.items()):
            index = self.document.chapter_index_for_row(row)
            path = resolve_relative_href(src, self.book.contents[index])
            description = None
            if path is not None:
                try:
                    _, data = self.book.get_resource(path)
                    description = describe_image(data)
                except (KeyError, OSError) as e:
                    self.logger.debug("Image %r not available: %s", path, e)
            entries.append(ImageEntry(row, src, path, description))
        return entries

    def speech_chunks(self):
        skip = set(self.document.pagebreak_rows) | set(self.document.image_rows)
        return build_speech_chunks(self.document.lines, self.settings.chunk_min,
                                   self.settings.chunk_max, skip, self.document.marker_rows)

    def search(self, pattern):
        return find_matches(self.document.lines, pattern)

    def load_in_background(self, width=None, on_cancel=None):
        """Lay out the book on a worker thread; apply the result with adopt()."""
        width = self.width if width is None else clamp_width(width)
        count = len(self.book.contents)

        def work():
            return width, [self.layout(i, width) for i in range(count)]

        return BackgroundTask(work, on_cancel=on_cancel, logger=self.logger).start()

    def adopt(self, result, row=0):
        """Install layouts produced by load_in_background()."""
        width, layouts = result
        self.width = width
        self.layouts = layouts
        self.recombine()
        self.row = self.clamp_row(row)
        return self.document


# =============================================================================
# CLI
# =============================================================================

def pop_option(args, flag, default):
    if flag not in args:
        return default
    i = args.index(flag)
    if i + 1 >= len(args):
        sys.exit("ERROR: {} needs a value.".format(flag))
    value = args[i+1]
    del args[i:i+2]
    return value


def dump_rows(coordinator, mode):
    if mode == "links":
        rows = []
        for link in coordinator.links():
            where = "-" if link.target_row is None else str(link.target_row + 1)
            rows.append("{:>5}  {}  ->  {} ({})".format(link.row + 1, link.label, link.href, where))
        return rows
    if mode == "images":
        return ["{:>5}  {}  {}".format(e.row + 1, e.path or e.src, e.description or "")
                .rstrip() for e in coordinator.images()]
    if mode == "chunks":
        return ["{:>5}  {}".format(c.first_row + 1, c.text) for c in coordinator.speech_chunks()]
    return list(coordinator.document.lines)


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)

    if len({"-h", "--help"} & set(args)) != 0:
        hlp = __doc__.rstrip()
        if "-h" in args:
            hlp = re.search("(\n|.)*(?=\n\nLayout)", hlp).group()
        print(hlp)
        sys.exit()

    if len({"-v", "--version", "-V"} & set(args)) != 0:
        print(__version__)
        print(__license__, "License")
        print("Build", __build_time__)
        sys.exit()

    debug = "--debug" in args or _to_bool(os.getenv("BOOKFLOW_DEBUG", ""))
    logging.basicConfig(stream=sys.stderr,
                        level=logging.DEBUG if debug else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    width = pop_option(args, "-w", DEFAULT_WIDTH)
    height = pop_option(args, "-H", DEFAULT_PAGE_HEIGHT)
    mode = "lines"
    for flag in ("--links", "--images", "--chunks"):
        if flag in args:
            mode = flag[2:]
    seamless = "--seamless" in args
    files = [a for a in args if a not in {"--debug", "--seamless", "--links", "--images", "--chunks"}]

    if files == []:
        print(__doc__)
        sys.exit("ERROR: No input files.")
    for f in files:
        if not os.path.exists(f):
            sys.exit("ERROR: No such file: {}".format(f))

    book = MemoryBook.from_files(files)
    if not book.contents:
        sys.exit("ERROR: Found no chapter files.")
    LOG.debug("Loaded %d chapters from %s", len(book.contents), book.root)

    coordinator = ReflowCoordinator(book, Settings(width=width, page_height=height, seamless=seamless))
    coordinator.load()
    for j in dump_rows(coordinator, mode):
        sys.stdout.buffer.write((j+"\n").encode("utf-8"))


if __name__ == "__main__":
    main()
