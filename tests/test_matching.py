"""Tests for shared trigger matching."""
from models.schemas import Template
from utils.matching import find_matching_template, numeric_trigger, overlaps, text_matches, trigger_keys


class TestReplyMatching:
    def test_substring_case_insensitive(self):
        assert text_matches("Quero COMPRAR uma passagem", ["comprar"])
        assert text_matches("oi", ["OI"])
        assert not text_matches("tchau", ["oi"])

    def test_empty_trigger_never_matches(self):
        assert not text_matches("qualquer coisa", ["", None])

    def test_first_active_in_list_order(self):
        templates = [
            Template(id="1", triggers=["a"], response="inativo", active=False),
            Template(id="2", triggers=["b"], response="dois"),
            Template(id="3", triggers=["a"], response="três"),
        ]
        assert find_matching_template("abc", templates).id == "2"
        assert find_matching_template("xyz", templates) is None


class TestTriggerSets:
    def test_trigger_keys(self):
        assert trigger_keys([" Oi ", "", "MENU"]) == {"oi", "menu"}
        assert trigger_keys(None) == set()

    def test_overlap_is_exact_token(self):
        assert overlaps(["Comprar"], ["comprar", "passagem"])
        assert not overlaps(["comprarei"], ["comprar"])

    def test_numeric_trigger(self):
        assert numeric_trigger(["comprar", "2", "1"], ["1", "2", "3"]) == 2
        assert numeric_trigger(["9"], ["1", "2"]) is None
