import pytest

from app.modules.directory_sync.domain.patterns import (
    extract_role_slug,
    is_literal,
    literal_prefix,
    matches_pattern,
    to_predicate,
)


def test_prefix_pattern_matches_and_extracts_slug():
    assert matches_pattern("Eng-Backend", "Eng-*")
    assert extract_role_slug("Eng-Backend", "Eng-*") == "backend"


def test_prefix_pattern_rejects_other_groups():
    assert to_predicate("Eng-*")("Sales-Ops") is False


def test_bare_wildcard_matches_everything_and_keeps_whole_name():
    matches = to_predicate("*")
    assert matches("Anything At All")
    assert matches("")
    assert extract_role_slug("Platform Admins", "*") == "platform admins"


def test_matching_is_case_insensitive_and_anchored():
    assert matches_pattern("eng-backend", "ENG-*")
    assert not matches_pattern("Team-Eng-Backend", "Eng-*")
    assert not matches_pattern("Eng", "Eng-*")


def test_regex_metacharacters_are_literal():
    assert matches_pattern("App.(Admin)+", "App.(*)+")
    assert not matches_pattern("AppX(Admin)+", "App.(*)+")


@pytest.mark.parametrize("pattern", [None, ""])
def test_empty_pattern_selects_every_group(pattern):
    assert matches_pattern("Whatever", pattern)
    assert extract_role_slug("Whatever", pattern) == "whatever"


def test_suffix_and_infix_wildcards():
    assert extract_role_slug("Admin-Role", "*-Role") == "admin"
    assert extract_role_slug("App-Admin-Role", "App-*-Role") == "admin"


def test_literal_pattern_only_yields_slug_on_exact_match():
    assert extract_role_slug("Admins", "admins") == "admins"
    assert extract_role_slug("Admins-2", "Admins") is None


def test_multiple_wildcards_yield_no_slug():
    assert matches_pattern("App-Admin-EU", "App-*-*")
    assert extract_role_slug("App-Admin-EU", "App-*-*") is None


def test_literal_prefix_and_literal_detection():
    assert literal_prefix("Eng-*") == "Eng-"
    assert literal_prefix("*-Role") == ""
    assert literal_prefix("Admins") == ""
    assert literal_prefix(None) == ""
    assert is_literal("Admins")
    assert not is_literal("Eng-*")
    assert not is_literal("")
