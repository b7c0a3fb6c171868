"""Ingest-time categorization: user rules first, then category hints."""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

import structlog

from .hints import DEFAULT_HINT_ENGINE, CategoryHintEngine
from .rules import RuleEngine, combined_text, get_field

logger = structlog.get_logger(__name__)

SOURCE_RULE = "rule"
SOURCE_HINT = "hint"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class CategoryAssignment:
    category_id: Optional[str]
    source: str  # rule | hint | none
    rule_id: Optional[str] = None


def categorize_transaction(
    tx: Any,
    hint_engine: Optional[CategoryHintEngine] = None,
    rule_engine: Optional[RuleEngine] = None,
) -> CategoryAssignment:
    """
    Pick a category for one transaction.

    User rules are authoritative; the hint engine is the zero-training
    baseline when no rule sets a category. A None category means the
    transaction stays in the Other bucket.
    """
    if rule_engine is not None:
        outcome = rule_engine.resolve(tx)
        if outcome is not None and outcome.category_id:
            return CategoryAssignment(outcome.category_id, SOURCE_RULE, outcome.category_rule_id)

    hint_engine = hint_engine or DEFAULT_HINT_ENGINE
    amount = get_field(tx, "amount") or 0
    category_id = hint_engine.hint(combined_text(tx), amount)
    if category_id:
        return CategoryAssignment(category_id, SOURCE_HINT)
    return CategoryAssignment(None, SOURCE_NONE)


def categorize_transactions(
    transactions: Iterable[Any],
    hint_engine: Optional[CategoryHintEngine] = None,
    rule_engine: Optional[RuleEngine] = None,
) -> List[CategoryAssignment]:
    hint_engine = hint_engine or DEFAULT_HINT_ENGINE
    assignments = [categorize_transaction(tx, hint_engine, rule_engine) for tx in transactions]
    logger.info(
        "transactions_categorized",
        total=len(assignments),
        by_rule=sum(1 for a in assignments if a.source == SOURCE_RULE),
        by_hint=sum(1 for a in assignments if a.source == SOURCE_HINT),
    )
    return assignments
