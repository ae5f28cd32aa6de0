"""Tests for version parsing, ordering and range algebra."""
import pytest

from common.errors import ParseError
from versioning import ANY, Comparison, VersionRange, compare, parse_version
from versioning.version import python_version_tuple, release_tuple


class TestVersionOrdering:
    """Versions form a total order with PEP 440 semantics."""

    def test_numeric_segments_compare_numerically(self):
        assert parse_version("1.10") > parse_version("1.9")
        assert compare(parse_version("1.2.10"), parse_version("1.2.9")) is Comparison.GREATER

    def test_prerelease_sorts_below_release(self):
        assert parse_version("2.0.0a1") < parse_version("2.0.0rc1") < parse_version("2.0.0")

    def test_missing_trailing_segments_equal_zero(self):
        assert compare(parse_version("1.0"), parse_version("1.0.0")) is Comparison.EQUAL

    def test_total_order_is_consistent(self):
        texts = ["1.0", "0.9", "1.0.post1", "1.0a2", "1.0.dev0", "1.1", "1.0rc1"]
        versions = sorted(parse_version(t) for t in texts)
        for a in versions:
            for b in versions:
                outcomes = [a < b, a == b, a > b]
                assert outcomes.count(True) == 1

    def test_canonical_round_trip(self):
        for text in ["1.0", "2.3.4", "1.0a1", "1.0.post2", "3.0rc1", "1!2.0"]:
            v = parse_version(text)
            assert parse_version(str(v)) == v

    @pytest.mark.parametrize("text", ["", "   ", "not-a-version", "1.0..2"])
    def test_invalid_version_raises_parse_error(self, text):
        with pytest.raises(ParseError):
            parse_version(text)

    def test_release_tuple_pads(self):
        assert release_tuple(parse_version("3"), 3) == (3, 0, 0)

    def test_python_version_tuple(self):
        assert python_version_tuple("3.11.4") == (3, 11)
        assert python_version_tuple("3") == (3, 0)


class TestVersionRangeParsing:
    """Range syntax: PEP 440 clauses plus caret, tilde, bare and wildcard forms."""

    def test_star_and_empty_mean_any(self):
        assert VersionRange.parse("*").is_any()
        assert VersionRange.parse("").is_any()
        assert VersionRange.parse(None) is ANY

    def test_bare_version_is_exact(self):
        rng = VersionRange.parse("1.2.3")
        assert rng.is_exact()
        assert rng.matches(parse_version("1.2.3"))
        assert not rng.matches(parse_version("1.2.4"))

    def test_caret_major(self):
        rng = VersionRange.parse("^1.2")
        assert rng.matches(parse_version("1.2.0"))
        assert rng.matches(parse_version("1.9.9"))
        assert not rng.matches(parse_version("2.0"))
        assert not rng.matches(parse_version("1.1"))

    def test_caret_zero_major_pins_minor(self):
        rng = VersionRange.parse("^0.2.3")
        assert rng.matches(parse_version("0.2.9"))
        assert not rng.matches(parse_version("0.3.0"))

    def test_tilde_pins_minor(self):
        rng = VersionRange.parse("~1.2")
        assert rng.matches(parse_version("1.2.7"))
        assert not rng.matches(parse_version("1.3"))

    def test_pep440_compatible_release(self):
        rng = VersionRange.parse("~=1.4.2")
        assert rng.matches(parse_version("1.4.9"))
        assert not rng.matches(parse_version("1.5.0"))

    def test_wildcard(self):
        rng = VersionRange.parse("==1.4.*")
        assert rng.matches(parse_version("1.4.11"))
        assert not rng.matches(parse_version("1.5"))

    def test_disjunction(self):
        rng = VersionRange.parse("<1.0 || >=3.0")
        assert rng.matches(parse_version("0.5"))
        assert rng.matches(parse_version("3.1"))
        assert not rng.matches(parse_version("2.0"))

    @pytest.mark.parametrize("text", [">=", ">=1.0,", "<1 ||", "%%"])
    def test_malformed_range_raises(self, text):
        with pytest.raises(ParseError):
            VersionRange.parse(text)

    def test_str_round_trips(self):
        rng = VersionRange.parse(">=1.0,<2.0 || ==3.0")
        assert VersionRange.parse(str(rng)) == rng

    def test_matches_does_not_exclude_prereleases(self):
        assert VersionRange.parse(">=1.0").matches(parse_version("2.0b1"))

    def test_allows_prereleases_only_when_named(self):
        assert VersionRange.parse(">=2.0b1").allows_prereleases
        assert not VersionRange.parse(">=2.0").allows_prereleases


class TestVersionRangeIntersection:
    """Intersection matches exactly the versions both sides match."""

    SAMPLES = ["0.1", "0.9", "1.0", "1.0.1", "1.5", "2.0a1", "2.0", "2.5", "3.0", "3.1", "10.0"]
    RANGES = [">=1.0,<2.0", "^1.0", "~2.0", ">=2.0,<3.0", "<1.0 || >=3.0", "!=1.5", "==2.*", "*", "2.5"]

    def test_intersection_equivalence(self):
        versions = [parse_version(s) for s in self.SAMPLES]
        for left in self.RANGES:
            for right in self.RANGES:
                a = VersionRange.parse(left)
                b = VersionRange.parse(right)
                both = a.intersect(b)
                for v in versions:
                    assert both.matches(v) == (a.matches(v) and b.matches(v)), (left, right, v)

    def test_disjoint_ranges_intersect_to_never(self):
        result = VersionRange.parse(">=2.0,<3.0").intersect(VersionRange.parse(">=1.0,<2.0"))
        assert result.is_empty()
        assert result == VersionRange.never()
        assert str(result) == "<none>"

    def test_touching_inclusive_bounds_are_not_empty(self):
        result = VersionRange.parse(">=2.0").intersect(VersionRange.parse("<=2.0"))
        assert not result.is_empty()
        assert result.matches(parse_version("2.0"))

    def test_exact_pin_outside_range_is_empty(self):
        result = VersionRange.parse("==1.5").intersect(VersionRange.parse("!=1.5"))
        assert result.is_empty()

    def test_any_is_identity(self):
        rng = VersionRange.parse(">=1.0")
        assert ANY.intersect(rng) == rng
        assert rng.intersect(ANY) == rng
