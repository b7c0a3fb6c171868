from unittest.mock import MagicMock

import pytest

from packages.core.config import Settings
from packages.core.errors import RuleError
from packages.categorization.rules import (
    ActionType,
    MatchType,
    Rule,
    RuleEngine,
    compile_safe_pattern,
    pattern_complexity,
    safe_search,
    validate_pattern,
)
from packages.ingestion_engine.models import ParsedTransaction


def make_rule(rule_id, priority, match_type, match_value, action_value="cat_food_groceries", **kw):
    data = {
        "id": rule_id,
        "priority": priority,
        "match_type": match_type,
        "match_value": match_value,
        "action_type": kw.pop("action_type", "set_category"),
        "action_value": action_value,
    }
    data.update(kw)
    return Rule.from_dict(data)


@pytest.fixture
def kiwi_tx():
    return {
        "id": "tx-1",
        "merchant": "KIWI",
        "description": "Visa 100021 Kiwi 505 Majorstuen",
        "amount": -45.9,
        "category_id": None,
    }


def test_lowest_priority_number_wins_regardless_of_order(kiwi_tx):
    rules = [
        make_rule("r-late", 90, "contains", "kiwi", "cat_shopping"),
        make_rule("r-early", 10, "contains", "majorstuen", "cat_food_groceries"),
        make_rule("r-mid", 50, "contains", "505", "cat_bills"),
    ]

    for ordering in (rules, list(reversed(rules))):
        outcome = RuleEngine(ordering).resolve(kiwi_tx)
        assert outcome.category_id == "cat_food_groceries"
        assert outcome.category_rule_id == "r-early"


def test_disabled_rules_are_ignored(kiwi_tx):
    engine = RuleEngine(
        [
            make_rule("r-off", 1, "contains", "kiwi", "cat_shopping", enabled=0),
            make_rule("r-on", 2, "contains", "kiwi", "cat_food_groceries"),
        ]
    )
    assert engine.resolve(kiwi_tx).category_id == "cat_food_groceries"


def test_unmatched_transaction_is_untouched(kiwi_tx):
    engine = RuleEngine([make_rule("r1", 1, "contains", "rema")])
    assert engine.evaluate(kiwi_tx) == []
    assert engine.resolve(kiwi_tx) is None


def test_string_match_uses_combined_text():
    # merchant only lives in the merchant column; rule targets description
    tx = {"merchant": "REMA 1000", "description": "Varekjøp", "amount": -99.0}
    engine = RuleEngine([make_rule("r1", 1, "contains", "rema 1000", match_field="description")])
    assert engine.resolve(tx).category_id == "cat_food_groceries"


@pytest.mark.parametrize(
    "match_type, value, expected",
    [
        ("equals", "varekjøp", True),
        ("exact", "VAREKJØP", True),
        ("equals", "vare", False),
        ("starts_with", "rema", True),
        ("starts_with", "vare", True),
        ("ends_with", "kjøp", True),
        ("ends_with", "1000", False),
        ("regex", r"^rema\s+\d+", True),
        ("regex", r"kiwi|meny", False),
    ],
)
def test_string_match_types(match_type, value, expected):
    tx = {"merchant": "REMA 1000", "description": "Varekjøp", "amount": -99.0}
    engine = RuleEngine([make_rule("r1", 1, match_type, value, match_field="description")])
    assert (engine.resolve(tx) is not None) == expected


@pytest.mark.parametrize(
    "match_type, value, secondary, expected",
    [
        ("greater_than", "-100", None, True),
        ("greater_than", "0", None, False),
        ("less_than", "-50", None, True),
        ("between", "-100", "-90", True),
        ("between", "-10", "10", False),
    ],
)
def test_numeric_match_types(match_type, value, secondary, expected):
    tx = {"merchant": "REMA 1000", "description": "Varekjøp", "amount": -99.0}
    rule = make_rule(
        "r1", 1, match_type, value, match_field="amount", match_value_secondary=secondary
    )
    assert (RuleEngine([rule]).resolve(tx) is not None) == expected


def test_numeric_rule_on_text_field_never_matches():
    tx = {"description": "Husleie", "amount": 5000.0}
    rule = make_rule("r1", 1, "greater_than", "10", match_field="description")
    assert RuleEngine([rule]).resolve(tx) is None


def test_resolve_folds_actions():
    tx = ParsedTransaction(
        tx_date="2026-01-02", description="NETFLIX.COM", amount=-129.0, merchant="Netflix"
    )
    engine = RuleEngine(
        [
            make_rule("r1", 1, "contains", "netflix", "cat_entertainment_streaming"),
            make_rule("r2", 2, "contains", "netflix", "cat_bills"),
            make_rule("r3", 3, "contains", "netflix", "abonnement", action_type="add_tag"),
            make_rule("r4", 4, "contains", "netflix", "abonnement", action_type="add_tag"),
            make_rule("r5", 5, "contains", "netflix", "streaming", action_type="add_tag"),
            make_rule("r6", 6, "contains", "netflix", "true", action_type="mark_recurring"),
            make_rule("r7", 7, "contains", "netflix", "Netflix Norway", action_type="set_merchant"),
        ]
    )

    actions = engine.evaluate(tx)
    assert [a.rule_id for a in actions] == ["r1", "r2", "r3", "r4", "r5", "r6", "r7"]

    outcome = engine.resolve(tx)
    assert outcome.category_id == "cat_entertainment_streaming"
    assert outcome.tags == ["abonnement", "streaming"]
    assert outcome.is_recurring is True
    assert outcome.merchant == "Netflix Norway"


def test_apply_batch_counts():
    transactions = [
        {"id": 1, "description": "KIWI 505", "amount": -10.0, "category_id": None},
        {"id": 2, "description": "KIWI 506", "amount": -20.0, "category_id": "cat_food_groceries"},
        {"id": 3, "description": "Husleie", "amount": -9000.0, "category_id": None},
    ]
    engine = RuleEngine([make_rule("r1", 1, "contains", "kiwi")])

    result = engine.apply_batch(transactions)

    assert result.to_dict() == {"processed": 3, "matched": 2, "updated": 1}
    assert [tx_id for tx_id, _ in result.outcomes] == [1, 2]


@pytest.mark.parametrize(
    "record, message",
    [
        ({"match_type": "fuzzy", "match_value": "x", "action_type": "set_category"}, "match type"),
        ({"match_type": "contains", "match_value": "x", "action_type": "delete"}, "action type"),
        ({"match_type": "contains", "action_type": "set_category"}, "match_value"),
        (
            {"match_type": "greater_than", "match_value": "abc", "action_type": "set_category"},
            "number",
        ),
        (
            {"match_type": "contains", "match_value": "x", "match_field": "iban", "action_type": "add_tag"},
            "match field",
        ),
    ],
)
def test_rule_from_dict_rejects_malformed(record, message):
    with pytest.raises(RuleError, match=message):
        Rule.from_dict(record)


def test_rule_from_dict_aliases():
    rule = Rule.from_dict(
        {"id": "r", "match_type": "exact", "match_value": "x", "action_type": "set_notes", "enabled": "false"}
    )
    assert rule.match_type == MatchType.EQUALS
    assert rule.action_type == ActionType.SET_NOTES
    assert rule.enabled is False
    assert rule.match_field == "description"


def test_from_records_skips_malformed_rules(kiwi_tx):
    engine = RuleEngine.from_records(
        [
            {"id": "bad", "match_type": "fuzzy", "match_value": "kiwi", "action_type": "set_category"},
            {
                "id": "good",
                "priority": 5,
                "match_type": "contains",
                "match_value": "kiwi",
                "action_type": "set_category",
                "action_value": "cat_food_groceries",
            },
        ]
    )
    assert [rule.id for rule in engine.rules] == ["good"]
    assert engine.resolve(kiwi_tx).category_id == "cat_food_groceries"


class TestRegexSafety:
    @pytest.fixture
    def settings(self):
        return Settings()

    @pytest.mark.parametrize(
        "pattern, reason",
        [
            ("a" * 201, "pattern too long"),
            (r"(?=kiwi)kiwi", "lookaround"),
            (r"(?<!x)kiwi", "lookaround"),
            (r"(a)\1", "backreference"),
            (r"a{10000}", "huge quantifier"),
            (r"(a+)+$", "nested quantifier"),
            (r"(\d*)*", "nested quantifier"),
            (r"((((a))))", "groups nested too deep"),
            ("a?" * 11, "too many quantifiers"),
            ("", "empty pattern"),
        ],
    )
    def test_unsafe_patterns_are_rejected(self, settings, pattern, reason):
        assert validate_pattern(pattern, settings) == reason

    @pytest.mark.parametrize("pattern", [r"^rema\s+\d+", r"kiwi|meny", r"(?i)coop (extra|obs)", r"[a-z]{2,5}"])
    def test_reasonable_patterns_pass(self, settings, pattern):
        assert validate_pattern(pattern, settings) is None

    def test_pattern_complexity_ignores_escapes_and_classes(self):
        assert pattern_complexity(r"\(\)[()*+]") == (0, 0)
        assert pattern_complexity(r"(a+?)(b*)c{2}") == (1, 3)

    def test_invalid_pattern_compiles_to_none(self, settings):
        assert compile_safe_pattern("rema[", settings) is None

    def test_rejected_pattern_never_matches(self, kiwi_tx):
        engine = RuleEngine([make_rule("r1", 1, "regex", r"(k+)+i")])
        assert engine.resolve(kiwi_tx) is None

    def test_timeout_counts_as_no_match(self):
        compiled = MagicMock()
        compiled.pattern = "(x|xx)+y"
        compiled.search.side_effect = TimeoutError("regex timed out")

        assert safe_search(compiled, "x" * 64, timeout=0.01) is False
        compiled.search.assert_called_once_with("x" * 64, timeout=0.01)

    def test_timeout_does_not_abort_batch(self, kiwi_tx):
        engine = RuleEngine(
            [
                make_rule("slow", 1, "regex", "kiwi", "cat_shopping"),
                make_rule("plain", 2, "contains", "kiwi", "cat_food_groceries"),
            ]
        )
        slow = MagicMock()
        slow.pattern = "kiwi"
        slow.search.side_effect = TimeoutError("regex timed out")
        engine._patterns[0] = slow

        result = engine.apply_batch([kiwi_tx, kiwi_tx])

        assert result.matched == 2
        assert all(outcome.category_id == "cat_food_groceries" for _, outcome in result.outcomes)
