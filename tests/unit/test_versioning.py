"""Tests for semantic-version precedence and constraint matching."""

from __future__ import annotations

import pytest

from modvault.core.versioning import (
    Constraint,
    allows_all,
    filter_candidates,
    is_valid_version,
    newest_first,
    parse_version,
    precedence_key,
)


class TestPrecedence:
    def test_release_after_prerelease(self):
        assert precedence_key(parse_version("1.0.0-alpha")) < precedence_key(parse_version("1.0.0"))

    def test_numeric_identifiers_before_alphanumeric(self):
        assert precedence_key(parse_version("1.0.0-1")) < precedence_key(parse_version("1.0.0-alpha"))

    def test_numeric_identifiers_compare_numerically(self):
        assert precedence_key(parse_version("1.0.0-rc.2")) < precedence_key(parse_version("1.0.0-rc.10"))

    def test_build_metadata_ignored(self):
        assert precedence_key(parse_version("1.0.0+a")) == precedence_key(parse_version("1.0.0+b"))

    def test_invalid_version_rejected(self):
        assert is_valid_version("1.2.3")
        assert not is_valid_version("1.2")
        assert not is_valid_version("latest")
        with pytest.raises(ValueError):
            parse_version("v1")


class TestNewestFirst:
    def test_orders_by_precedence(self):
        assert newest_first(["1.0.0", "2.0.0", "1.10.0", "1.2.0"]) == [
            "2.0.0", "1.10.0", "1.2.0", "1.0.0",
        ]

    def test_independent_of_input_order(self):
        versions = ["1.0.0+b", "1.0.0", "1.0.0+a", "0.9.0"]
        assert newest_first(versions) == newest_first(list(reversed(versions)))

    def test_drops_non_semver(self):
        assert newest_first(["1.0.0", "nightly"]) == ["1.0.0"]


class TestConstraint:
    @pytest.mark.parametrize(
        ("expression", "version", "expected"),
        [
            (">=1.0, <2.0", "1.2.0", True),
            (">=1.0, <2.0", "2.0.0", False),
            (">=1.0 <2.0", "1.0.0", True),
            ("^1.2", "1.9.9", True),
            ("^1.2", "2.0.0", False),
            ("~1.2.3", "1.2.9", True),
            ("~1.2.3", "1.3.0", False),
            ("=1.0.0", "1.0.0", True),
            ("=1.0.0", "1.0.1", False),
            ("1.x", "1.4.0", True),
            ("*", "7.0.0", True),
            ("", "0.1.0", True),
            ("<1.0.0 || >=3.0.0", "3.1.0", True),
            ("<1.0.0 || >=3.0.0", "2.0.0", False),
        ],
    )
    def test_allows(self, expression, version, expected):
        assert Constraint(expression).allows(version) is expected

    def test_simple_spec_fallback(self):
        constraint = Constraint("==1.2.0")
        assert constraint.allows("1.2.0")
        assert not constraint.allows("1.2.1")

    def test_invalid_expression_raises(self):
        with pytest.raises(ValueError):
            Constraint(">=banana")

    def test_non_semver_never_allowed(self):
        assert not Constraint("*").allows("not-a-version")

    def test_equality_by_normalized_expression(self):
        assert Constraint(">=1.0, <2.0") == Constraint(">=1.0  <2.0")
        assert len({Constraint("^1.0"), Constraint("^1.0")}) == 1
        assert str(Constraint("")) == "*"


class TestCandidateFiltering:
    def test_intersection_of_constraints(self):
        constraints = [Constraint(">=1.0"), Constraint("<2.0")]
        assert allows_all(constraints, "1.5.0")
        assert not allows_all(constraints, "2.1.0")

    def test_filter_candidates_newest_first(self):
        versions = ["1.0.0", "1.2.0", "2.0.0"]
        assert filter_candidates(versions, [Constraint(">=1.0, <2.0")]) == ["1.2.0", "1.0.0"]

    def test_empty_when_disjoint(self):
        assert filter_candidates(["1.0.0", "2.0.0"], [Constraint("=1.0.0"), Constraint("=2.0.0")]) == []
