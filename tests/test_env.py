"""Tests for environment resolution and merging."""

from __future__ import annotations

import pytest

from podline.env import entry_name, expand, merge, to_mapping
from podline.errors import ResolutionError


class TestExpand:
    def test_qualified_entries_unchanged(self):
        assert expand(["A=1"]) == ["A=1"]
        assert expand(["A=1"], {"A": "2"}) == ["A=1"]

    def test_bare_name_from_mapping(self):
        assert expand(["HOME"], {"HOME": "/root"}) == ["HOME=/root"]

    def test_bare_name_from_entry_list(self):
        assert expand(["TOKEN"], ["TOKEN=abc", "OTHER=1"]) == ["TOKEN=abc"]

    def test_first_source_wins(self):
        assert expand(["A"], {"A": "first"}, {"A": "second"}) == ["A=first"]

    def test_falls_through_to_later_source(self):
        assert expand(["B"], {"A": "1"}, {"B": "2"}) == ["B=2"]

    def test_empty_value_resolves(self):
        assert expand(["EMPTY"], {"EMPTY": ""}) == ["EMPTY="]

    def test_value_may_contain_equals(self):
        assert expand(["OPTS"], ["OPTS=a=b"]) == ["OPTS=a=b"]

    def test_unresolved_raises(self):
        with pytest.raises(ResolutionError) as exc:
            expand(["MISSING"], {}, scope="build step <test>")
        assert exc.value.name == "MISSING"
        assert str(exc.value) == "Unable to find match for environment variable <MISSING> in build step <test>"


class TestMerge:
    def test_local_wins_global_fills_gaps(self):
        assert merge(["A=1", "B=2"], ["A=9"]) == ["A=9", "B=2"]

    def test_empty_local(self):
        assert merge(["A=1"], []) == ["A=1"]

    def test_bare_names_collide_by_name(self):
        assert merge(["A=1"], ["A"]) == ["A"]

    def test_does_not_mutate_inputs(self):
        global_entries, local_entries = ["A=1"], ["B=2"]
        merge(global_entries, local_entries)
        assert global_entries == ["A=1"]
        assert local_entries == ["B=2"]


class TestHelpers:
    def test_entry_name(self):
        assert entry_name("A=1") == "A"
        assert entry_name("A") == "A"

    def test_to_mapping_skips_bare(self):
        assert to_mapping(["A=1", "B", "C=x=y"]) == {"A": "1", "C": "x=y"}
