# Copyright 2026 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for fingerprint derivation and span similarity."""

from conftest import make_request
from victor_inline.fingerprint import (
    TextChange,
    compute_fingerprint,
    cursor_span,
    normalize_prefix,
    provisional_fingerprint,
    span_similarity,
    spans_diverge,
    text_change,
)
from victor_inline.protocol import ContextSnippet, SourceKind


def _snippet(content):
    return ContextSnippet(source_kind=SourceKind.OPEN_FILE, content=content, relevance_score=0.5)


class TestFingerprint:
    """Equality of semantically identical attempts."""

    def test_identical_requests_match(self):
        a = compute_fingerprint(make_request("x = 1\ny = "), [_snippet("ctx")])
        b = compute_fingerprint(make_request("x = 1\ny = "), [_snippet("ctx")])
        assert a == b
        assert hash(a) == hash(b)

    def test_trailing_whitespace_and_line_endings_ignored(self):
        a = compute_fingerprint(make_request("x = 1   \r\ny = ", "\r\nz = 2  "))
        b = compute_fingerprint(make_request("x = 1\ny = ", "\nz = 2"))
        assert a == b

    def test_cursor_line_whitespace_matters(self):
        assert compute_fingerprint(make_request("return ")) != compute_fingerprint(
            make_request("return")
        )

    def test_document_uri_is_part_of_identity(self):
        a = compute_fingerprint(make_request("x = ", uri="file:///a.py"))
        b = compute_fingerprint(make_request("x = ", uri="file:///b.py"))
        assert a.digest != b.digest
        assert a != b

    def test_snippet_order_matters(self):
        request = make_request("x = ")
        first = compute_fingerprint(request, [_snippet("one"), _snippet("two")])
        second = compute_fingerprint(request, [_snippet("two"), _snippet("one")])
        assert first != second

    def test_prefix_suffix_boundary_is_unambiguous(self):
        a = compute_fingerprint(make_request("ab", "c"))
        b = compute_fingerprint(make_request("a", "bc"))
        assert a != b

    def test_provisional_has_no_snippets(self):
        request = make_request("x = ")
        assert provisional_fingerprint(request) == compute_fingerprint(request, [])
        assert provisional_fingerprint(request) != compute_fingerprint(request, [_snippet("c")])

    def test_str_is_short(self):
        fp = compute_fingerprint(make_request("x = ", uri="file:///a.py"))
        assert str(fp) == f"file:///a.py#{fp.digest[:12]}"

    def test_normalize_prefix_keeps_cursor_line(self):
        assert normalize_prefix("a  \nb ") == "a\nb "


class TestSpans:
    """Cursor spans used for cache invalidation."""

    def test_cursor_span_clamps(self):
        assert cursor_span("abcdef", 3, 2) == "bcde"
        assert cursor_span("abcdef", 100, 2) == "ef"
        assert cursor_span("abcdef", 0, 2) == "ab"

    def test_similarity(self):
        assert span_similarity("same text", "same text") == 1.0
        assert span_similarity("def compute(x):", "def compute(y):") > 0.8
        assert span_similarity("aaaaaaaa", "zzzzzzzz") == 0.0

    def test_spans_diverge_agrees_with_full_ratio(self):
        pairs = [
            ("def compute(x):", "def compute(y):"),
            ("aaaaaaaa", "zzzzzzzz"),
            ("return total", "return totals + 1"),
            ("abc", "cba"),
        ]
        for a, b in pairs:
            for threshold in (0.3, 0.6, 0.9):
                expected = span_similarity(a, b) < threshold
                assert spans_diverge(a, b, threshold) is expected

    def test_identical_spans_never_diverge(self):
        assert spans_diverge("same", "same", 1.0) is False


class TestTextChange:
    """Smallest edited region between document versions."""

    def test_equal_texts(self):
        assert text_change("abc", "abc") is None

    def test_insertion(self):
        change = text_change("def f():\n    return\n", "def f():\n    return x\n")
        assert change == TextChange(start=19, old_end=19, new_end=21)
        assert change.delta == 2

    def test_deletion(self):
        change = text_change("value = 10\n", "value = 1\n")
        assert change == TextChange(start=9, old_end=10, new_end=9)
        assert change.delta == -1

    def test_replacement_in_middle(self):
        old, new = "a = compute(x)\nb = 2\n", "a = render(x)\nb = 2\n"
        change = text_change(old, new)
        assert old[: change.start] == new[: change.start]
        assert old[change.old_end :] == new[change.new_end :]
        assert old[change.start : change.old_end] == "compute"
        assert new[change.start : change.new_end] == "render"

    def test_repeated_characters_do_not_overlap(self):
        change = text_change("aaaa", "aaaaaa")
        assert change.start == 4
        assert change.old_end == 4
        assert change.new_end == 6
