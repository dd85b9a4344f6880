"""
Tests for filter fragment parsing and gating.

Covers:
- Preset header parsing (PotentialDuplicates)
- Predicate normalization (WHERE, outer parentheses, whitespace)
- Denylist rejection of structural keywords and separators
- Cache key normalization
"""

import pytest

from reco_engines.filters import (
    extract_safe_predicate,
    normalize_filter_for_cache,
    normalize_predicate,
    parse_filter,
    split_header,
)
from reco_kernel.exceptions import FilterRejectedError


class TestHeader:

    def test_preset_parsed(self):
        preset, body = split_header('/*JSON:{"PotentialDuplicates": true}*/ WHERE action = 1')

        assert preset == {"PotentialDuplicates": True}
        assert body == "WHERE action = 1"

    def test_invalid_preset_treated_as_empty(self):
        preset, body = split_header("/*JSON:{not json}*/ action = 1")

        assert preset == {}
        assert body == "action = 1"

    def test_no_header(self):
        assert split_header("  action = 1 ") == ({}, "action = 1")

    def test_potential_duplicates_flag(self):
        fragment = parse_filter('/*JSON:{"PotentialDuplicates": true}*/')

        assert fragment.potential_duplicates is True
        assert fragment.predicate is None


class TestNormalizePredicate:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("WHERE account_id = 'X'", "account_id = 'X'"),
            ("(account_id = 'X')", "account_id = 'X'"),
            ("((WHERE  account_id  =  'X'))", "account_id = 'X'"),
            ("(a = 1) AND (b = 2)", "(a = 1) AND (b = 2)"),
            ("  ", None),
            (None, None),
        ],
    )
    def test_normalization(self, raw, expected):
        assert normalize_predicate(raw) == expected

    def test_parenthesis_inside_quotes_ignored(self):
        assert normalize_predicate("(comments = ')')") == "comments = ')'"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("raw_label = 'A  B'", "raw_label = 'A  B'"),
            ("raw_label  =  'A\tB'  AND  x = 1", "raw_label = 'A\tB' AND x = 1"),
            ('comments = "two  spaces"', 'comments = "two  spaces"'),
            ("label = 'O''Brien  Ltd'", "label = 'O''Brien  Ltd'"),
        ],
    )
    def test_whitespace_inside_literals_kept(self, raw, expected):
        assert normalize_predicate(raw) == expected

    def test_literal_spacing_changes_cache_key(self):
        assert normalize_filter_for_cache("x = 'A B'") != normalize_filter_for_cache("x = 'A  B'")


class TestDenylist:

    def test_statement_separator_rejected(self):
        with pytest.raises(FilterRejectedError) as exc_info:
            parse_filter("; DROP TABLE x").safe_predicate()

        assert exc_info.value.token == ";"

    @pytest.mark.parametrize("keyword", ["union", "SELECT", "Insert", "delete", "update", "drop", "alter", "exec"])
    def test_keywords_rejected(self, keyword):
        with pytest.raises(FilterRejectedError):
            parse_filter(f"account_id = 'X' {keyword} 1").safe_predicate()

    def test_comment_opener_rejected(self):
        assert extract_safe_predicate("action = 1 -- trailing") is None

    def test_keyword_inside_identifier_allowed(self):
        """``last_modified``/``updated_by``-like identifiers are not whole-word hits."""
        assert extract_safe_predicate("reco_delete_date IS NULL") == "reco_delete_date IS NULL"

    def test_plain_predicate_passes(self):
        assert extract_safe_predicate("Account_ID = 'PIVOT1'") == "Account_ID = 'PIVOT1'"


class TestCacheKey:

    def test_spellings_share_key(self):
        assert normalize_filter_for_cache("WHERE (action = 1)") == normalize_filter_for_cache("action  =  1")

    def test_duplicates_prefix(self):
        key = normalize_filter_for_cache('/*JSON:{"PotentialDuplicates": true}*/ action = 1')

        assert key == "#dups action = 1"

    def test_empty_filter(self):
        assert normalize_filter_for_cache(None) == ""
        assert normalize_filter_for_cache("/*JSON:{}*/") == ""
