from packages.categorization.rules import Rule, RuleEngine
from packages.categorization.service import categorize_transaction, categorize_transactions
from packages.ingestion_engine.models import ParsedTransaction


def rule_engine():
    return RuleEngine(
        [
            Rule.from_dict(
                {
                    "id": "r-kiwi",
                    "priority": 1,
                    "match_type": "contains",
                    "match_value": "kiwi",
                    "action_type": "set_category",
                    "action_value": "cat_food",
                }
            ),
            Rule.from_dict(
                {
                    "id": "r-tag",
                    "priority": 2,
                    "match_type": "contains",
                    "match_value": "netflix",
                    "action_type": "add_tag",
                    "action_value": "abonnement",
                }
            ),
        ]
    )


def test_rule_beats_hint():
    tx = ParsedTransaction(tx_date="2026-01-02", description="KIWI 505 MAJORSTUEN", amount=-45.9)
    assignment = categorize_transaction(tx, rule_engine=rule_engine())
    assert assignment.category_id == "cat_food"
    assert assignment.source == "rule"
    assert assignment.rule_id == "r-kiwi"


def test_hint_when_no_rule_sets_category():
    tx = {"description": "NETFLIX.COM", "amount": -129.0}
    assignment = categorize_transaction(tx, rule_engine=rule_engine())
    assert assignment.category_id == "cat_entertainment_streaming"
    assert assignment.source == "hint"
    assert assignment.rule_id is None


def test_hint_sees_merchant_and_amount():
    assert categorize_transaction({"merchant": "Trumf", "description": "Bonus", "amount": 85.0}).category_id == (
        "cat_income_refund"
    )
    assert categorize_transaction({"merchant": "Trumf", "description": "Bonus", "amount": -85.0}).category_id == (
        "cat_food_groceries"
    )


def test_uncategorized_stays_in_other():
    assignment = categorize_transaction({"description": "Ukjent mottaker", "amount": -10})
    assert assignment.category_id is None
    assert assignment.source == "none"


def test_batch():
    transactions = [
        {"description": "KIWI 505", "amount": -10.0},
        {"description": "Spotify P2F4", "amount": -119.0},
        {"description": "Ukjent", "amount": -1.0},
    ]
    assignments = categorize_transactions(transactions, rule_engine=rule_engine())
    assert [a.source for a in assignments] == ["rule", "hint", "none"]
