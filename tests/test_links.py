"""Test href classification and resolution to document rows."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bookflow import (
    LinkResolver, LinkTarget, LinkEntry, ChapterLayout, DocumentStructure,
    assemble, is_external_link, is_footnote_link, resolve_relative_href,
)


def make_document():
    first = DocumentStructure(["a", "b", "c"], anchor_rows={"top": 0, "fn3": 2, "x": 1},
                              link_spans=[LinkEntry(0, "#fn3", "3"), LinkEntry(1, "ch2.xhtml", "Next")])
    second = DocumentStructure(["d", "e"], anchor_rows={"sec": 1, "x": 0, "endnote-7": 1})
    return assemble([ChapterLayout(first, 20), ChapterLayout(second, 20)], page_height=None)


class TestClassification:
    """Test external and footnote link checks."""

    def test_external_schemes(self):
        for href in ("http://a.org", "https://a.org/x", "mailto:me@a.org",
                     "tel:+123", "ftp://files.a.org", "HTTPS://A.ORG"):
            assert is_external_link(href)
        for href in ("#top", "ch2.xhtml", "../Text/ch2.xhtml#x", "data:image/png;base64,AA"):
            assert not is_external_link(href)

    def test_footnote_links(self):
        assert is_footnote_link(LinkEntry(0, "#fn1", "^{1}"))
        assert is_footnote_link(LinkEntry(0, "notes.xhtml#note12", "twelve"))
        assert is_footnote_link(LinkEntry(0, "#ref", "[4]"))
        assert not is_footnote_link(LinkEntry(0, "ch2.xhtml", "Chapter 2"))
        assert not is_footnote_link(LinkEntry(0, "https://a.org/#fn1", "1"))
        assert not is_footnote_link(LinkEntry(0, "#sec", "Section"))

    def test_footnotes_in_range(self):
        doc = make_document()
        assert doc.footnotes_in_range(0, 3) == [LinkEntry(0, "#fn3", "3")]
        assert doc.links_in_range(1, 2) == [LinkEntry(1, "ch2.xhtml", "Next")]


class TestRelativePaths:
    """Test joining hrefs onto chapter paths."""

    def test_sibling(self):
        assert resolve_relative_href("chapter007.xhtml", "OEBPS/Text/chapter001.xhtml") \
            == "OEBPS/Text/chapter007.xhtml"

    def test_parent_directory(self):
        assert resolve_relative_href("../Images/cover.jpg", "OEBPS/Text/chapter001.xhtml") \
            == "OEBPS/Images/cover.jpg"

    def test_absolute_path(self):
        assert resolve_relative_href("/Text/chapter007.xhtml") == "Text/chapter007.xhtml"

    def test_no_base(self):
        assert resolve_relative_href("chapter007.xhtml") is None
        assert resolve_relative_href("   ") is None

    def test_root_level_base_and_quoting(self):
        assert resolve_relative_href("./my%20file.xhtml", "index.xhtml") == "my file.xhtml"
        assert resolve_relative_href("../../x.xhtml", "a.xhtml") == "x.xhtml"


class TestResolver:
    """Test href to row resolution."""

    def setup_method(self):
        self.doc = make_document()
        self.resolver = LinkResolver(self.doc, ["Text/ch1.xhtml", "Text/ch2.xhtml"])

    def test_fragment_in_same_chapter(self):
        assert self.resolver.resolve("#fn3", 0) == LinkTarget(LinkTarget.INTERNAL, 2, "#fn3")

    def test_anchor_ids_are_chapter_scoped(self):
        assert self.doc.anchor_rows["x"] == 1
        assert self.resolver.resolve("#x", origin_row=0).row == 1
        assert self.resolver.resolve("#x", origin_row=4).row == 3

    def test_footnote_id_fallbacks(self):
        assert self.resolver.resolve_anchor("note3", 0) == 2
        assert self.resolver.resolve_anchor("footnote-3", 0) == 2
        assert self.resolver.resolve_anchor("n7", 1) == 4
        assert self.resolver.resolve_anchor("missing", 0) is None

    def test_path_and_fragment(self):
        assert self.resolver.resolve("ch2.xhtml#sec", 0).row == 4
        assert self.resolver.resolve("../Text/ch2.xhtml#sec", 0).row == 4
        assert self.resolver.resolve("/Text/ch2.xhtml#sec", 0).row == 4

    def test_path_only_goes_to_chapter_start(self):
        target = self.resolver.resolve("ch2.xhtml", 0)
        assert target.kind == LinkTarget.INTERNAL
        assert target.row == 3

    def test_unknown_fragment_in_other_chapter_goes_to_start(self):
        assert self.resolver.resolve("ch2.xhtml#nothing", 0).row == 3

    def test_unknown_fragment_in_current_chapter_is_here(self):
        target = self.resolver.resolve("ch1.xhtml#nothing", 1)
        assert target.kind == LinkTarget.HERE
        assert target.row is None

    def test_external(self):
        target = self.resolver.resolve("https://example.com/", 0)
        assert target == LinkTarget(LinkTarget.EXTERNAL, None, "https://example.com/")
        assert not target.is_internal

    def test_unresolvable(self):
        assert self.resolver.resolve("#nothing", 0).kind == LinkTarget.UNRESOLVABLE
        assert self.resolver.resolve("missing.xhtml", 0).kind == LinkTarget.UNRESOLVABLE
        assert self.resolver.resolve("", 0).kind == LinkTarget.UNRESOLVABLE
        assert self.resolver.resolve("#", 0).kind == LinkTarget.UNRESOLVABLE

    def test_current_chapter_without_origin_row(self):
        assert self.resolver.resolve("#x", current_chapter=1).row == 3

    def test_chapter_for_path(self):
        assert self.resolver.chapter_for_path("Text/ch2.xhtml") == 1
        assert self.resolver.chapter_for_path("ch1.xhtml") == 0
        assert self.resolver.chapter_for_path("Text%2Fch2.xhtml") == 1
        assert self.resolver.chapter_for_path("other.xhtml") is None
