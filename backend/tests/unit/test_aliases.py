# backend/tests/unit/test_aliases.py
import pytest

from app.workflows.aliases import AliasGraph, alias_graph


def test_group_contains_every_spelling():
    assert alias_graph.group("proposer_email") == {"email", "user_email", "proposer_email"}
    assert alias_graph.canonical("user_mobile_phone") == "phone"
    assert alias_graph.group("unrelated") == {"unrelated"}


def test_lookup_falls_back_to_alias():
    data = {"user_first_name": "Dana", "first_name": ""}
    assert alias_graph.lookup(data, "first_name") == "Dana"
    assert alias_graph.lookup(data, "proposer_first_name") == "Dana"
    assert alias_graph.lookup({}, "first_name") is None


def test_fan_out_copies_values_but_explicit_keys_win():
    expanded = alias_graph.fan_out({"email": "a@gmail.com", "user_email": "b@gmail.com"})
    assert expanded["email"] == "a@gmail.com"
    assert expanded["user_email"] == "b@gmail.com"
    assert expanded["proposer_email"] in ("a@gmail.com", "b@gmail.com")


def test_expand_slugs():
    assert alias_graph.expand_slugs(["last_name", "x"]) == {"last_name", "user_last_name", "proposer_last_name", "x"}


def test_overlapping_groups_are_rejected():
    with pytest.raises(ValueError):
        AliasGraph([("a", "b"), ("c", "b")])
