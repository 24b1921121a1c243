"""Tests for HTML-to-markdown conversion of update descriptions."""

from unittest.mock import patch

import pytest

from azupdates.html_converter import convert_html_to_markdown, strip_html_tags


class TestConvert:

    @pytest.mark.parametrize("content", [None, "", "   \n "])
    def test_empty_input(self, content):
        assert convert_html_to_markdown(content) is None

    def test_paragraph_and_emphasis(self):
        md = convert_html_to_markdown("<p>Now <strong>generally</strong> <em>available</em>.</p>")
        assert md == "Now **generally** *available*."

    def test_lists_use_dashes(self):
        md = convert_html_to_markdown("<ul><li>One</li><li>Two</li></ul>")
        assert "- One" in md and "- Two" in md

    def test_links_kept_inline(self):
        md = convert_html_to_markdown('<p>See <a href="https://learn.microsoft.com/x">docs</a></p>')
        assert md == "See [docs](https://learn.microsoft.com/x)"

    def test_relative_links_resolved(self):
        md = convert_html_to_markdown('<a href="/updates/abc">update</a>')
        assert "(https://azure.microsoft.com/updates/abc)" in md

    def test_long_lines_not_wrapped(self):
        text = "word " * 100
        md = convert_html_to_markdown(f"<p>{text}</p>")
        assert "\n" not in md

    def test_blank_lines_collapsed(self):
        md = convert_html_to_markdown("<p>a</p><br><br><br><br><p>b</p>")
        assert "\n\n\n" not in md
        assert md.startswith("a") and md.endswith("b")

    def test_falls_back_to_stripping(self):
        with patch("azupdates.html_converter._make_converter", side_effect=RuntimeError("broken")):
            md = convert_html_to_markdown("<p>Hello <b>there</b></p>")
        assert md == "Hello there"


class TestStrip:

    def test_removes_scripts_and_styles(self):
        html = "<style>p{}</style><p>Visible</p><script>alert(1)</script>"
        assert strip_html_tags(html) == "Visible"

    def test_entities_and_whitespace(self):
        assert strip_html_tags("<p>A&nbsp;&amp;\n\n  B</p>") == "A & B"
