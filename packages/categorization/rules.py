"""
User-authored categorization rules.

Rules are evaluated in ascending priority (lower number wins). String match
types look at both the combined ``merchant + description`` text and the
rule's own field, so a rule keeps working whichever column the bank export
populated. Regex patterns are validated for structural complexity up front
and run under a timeout; a rejected or overrunning pattern simply does not
match.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import regex
import structlog

from packages.core.config import Settings, get_settings
from packages.core.errors import RuleError

logger = structlog.get_logger(__name__)


class MatchType(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


class ActionType(str, Enum):
    SET_CATEGORY = "set_category"
    ADD_TAG = "add_tag"
    SET_MERCHANT = "set_merchant"
    SET_NOTES = "set_notes"
    MARK_RECURRING = "mark_recurring"


MATCH_FIELDS = ("description", "merchant", "amount", "source_type", "status")
NUMERIC_MATCH_TYPES = (MatchType.GREATER_THAN, MatchType.LESS_THAN, MatchType.BETWEEN)
MATCH_TYPE_ALIASES = {"exact": MatchType.EQUALS}

_LOOKAROUND_RE = re.compile(r"\(\?<?[=!]")
_BACKREFERENCE_RE = re.compile(r"\\[1-9]|\(\?P=|\\g<|\\k<")
_HUGE_QUANTIFIER_RE = re.compile(r"\{[\d,]*\d{4,}")
_NESTED_QUANTIFIER_RE = re.compile(r"\((?:[^()\\]|\\.)*[*+}](?:[^()\\]|\\.)*\)[*+{]")
_BRACE_QUANTIFIER_RE = re.compile(r"\{\d+(?:,\d*)?\}")


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class Rule:
    id: str
    priority: int
    match_field: str
    match_type: MatchType
    match_value: str
    action_type: ActionType
    action_value: str
    name: str = ""
    enabled: bool = True
    match_value_secondary: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rule":
        """Build a rule from a store record, rejecting malformed ones."""
        raw_match_type = str(data.get("match_type") or "").strip().lower()
        try:
            match_type = MATCH_TYPE_ALIASES.get(raw_match_type) or MatchType(raw_match_type)
        except ValueError:
            raise RuleError(f"Unknown match type: {raw_match_type!r}") from None

        raw_action_type = str(data.get("action_type") or "").strip().lower()
        try:
            action_type = ActionType(raw_action_type)
        except ValueError:
            raise RuleError(f"Unknown action type: {raw_action_type!r}") from None

        match_field = str(data.get("match_field") or "description").strip().lower()
        if match_field not in MATCH_FIELDS:
            raise RuleError(f"Unknown match field: {match_field!r}")

        match_value = data.get("match_value")
        if match_value is None or str(match_value) == "":
            raise RuleError("Rule is missing match_value")
        secondary = data.get("match_value_secondary")

        if match_type in NUMERIC_MATCH_TYPES:
            for value in (match_value, secondary):
                if value in (None, ""):
                    continue
                try:
                    float(value)
                except (TypeError, ValueError):
                    raise RuleError(f"Numeric rule needs a number, got {value!r}") from None

        try:
            priority = int(data.get("priority", 100))
        except (TypeError, ValueError):
            raise RuleError(f"Invalid priority: {data.get('priority')!r}") from None

        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            priority=priority,
            enabled=_truthy(data.get("enabled", True)),
            match_field=match_field,
            match_type=match_type,
            match_value=str(match_value),
            match_value_secondary=None if secondary in (None, "") else str(secondary),
            action_type=action_type,
            action_value=str(data.get("action_value") or ""),
        )


@dataclass(frozen=True)
class RuleAction:
    type: ActionType
    value: str
    rule_id: str
    rule_name: str = ""


@dataclass
class RuleOutcome:
    """What the matching rules want written back for one transaction."""

    category_id: Optional[str] = None
    merchant: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: Optional[bool] = None
    tags: List[str] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)

    @property
    def category_rule_id(self) -> Optional[str]:
        for action in self.actions:
            if action.type == ActionType.SET_CATEGORY:
                return action.rule_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "merchant": self.merchant,
            "notes": self.notes,
            "is_recurring": self.is_recurring,
            "tags": list(self.tags),
            "rule_ids": [action.rule_id for action in self.actions],
        }


@dataclass
class BatchResult:
    processed: int = 0
    matched: int = 0
    updated: int = 0
    outcomes: List[Tuple[Any, RuleOutcome]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "matched": self.matched, "updated": self.updated}


def pattern_complexity(pattern: str) -> Tuple[int, int]:
    """(max group nesting depth, quantifier count), ignoring escapes and classes."""
    depth = max_depth = quantifiers = 0
    in_class = False
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
        elif ch == "(":
            depth += 1
            max_depth = max(max_depth, depth)
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch in "*+?":
            # "(?" is a group modifier and "+?" / "*?" is laziness, not another quantifier
            if not (ch == "?" and i > 0 and pattern[i - 1] in "(*+?}"):
                quantifiers += 1
        elif ch == "{" and _BRACE_QUANTIFIER_RE.match(pattern, i):
            quantifiers += 1
        i += 1
    return max_depth, quantifiers


def validate_pattern(pattern: str, settings: Optional[Settings] = None) -> Optional[str]:
    """Reason the pattern is unsafe to run, or None when it is acceptable."""
    settings = settings or get_settings()
    if not pattern:
        return "empty pattern"
    if len(pattern) > settings.REGEX_MAX_LENGTH:
        return "pattern too long"
    if _LOOKAROUND_RE.search(pattern):
        return "lookaround"
    if _BACKREFERENCE_RE.search(pattern):
        return "backreference"
    if _HUGE_QUANTIFIER_RE.search(pattern):
        return "huge quantifier"
    if _NESTED_QUANTIFIER_RE.search(pattern):
        return "nested quantifier"
    depth, quantifiers = pattern_complexity(pattern)
    if depth > settings.REGEX_MAX_GROUP_DEPTH:
        return "groups nested too deep"
    if quantifiers > settings.REGEX_MAX_QUANTIFIERS:
        return "too many quantifiers"
    return None


def compile_safe_pattern(pattern: str, settings: Optional[Settings] = None):
    """Compiled case-insensitive pattern, or None if it fails validation."""
    reason = validate_pattern(pattern, settings)
    if reason is None:
        try:
            return regex.compile(pattern, regex.IGNORECASE)
        except regex.error as e:
            reason = f"invalid: {e}"
    logger.warning("regex_rejected", pattern=pattern[:80], reason=reason)
    return None


def safe_search(compiled, text: str, timeout: float) -> bool:
    if compiled is None:
        return False
    try:
        return compiled.search(text, timeout=timeout) is not None
    except TimeoutError:
        logger.warning("regex_timeout", pattern=compiled.pattern[:80], timeout=timeout)
        return False


def get_field(tx: Any, name: str, default: Any = None) -> Any:
    """Read a field from a transaction object or a plain mapping."""
    if isinstance(tx, Mapping):
        return tx.get(name, default)
    return getattr(tx, name, default)


def combined_text(tx: Any) -> str:
    merchant = get_field(tx, "merchant") or ""
    description = get_field(tx, "description") or ""
    return " ".join(f"{merchant} {description}".split())


class RuleEngine:
    """Ordered, enabled rules plus their precompiled regex patterns."""

    def __init__(self, rules: Iterable[Rule], settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        # id breaks priority ties so the outcome never depends on store order
        self.rules: List[Rule] = sorted(
            (rule for rule in rules if rule.enabled),
            key=lambda rule: (rule.priority, rule.id),
        )
        self._patterns: Dict[int, Any] = {}
        for index, rule in enumerate(self.rules):
            if rule.match_type == MatchType.REGEX:
                self._patterns[index] = compile_safe_pattern(rule.match_value, self.settings)
        logger.debug("rule_engine_ready", rules=len(self.rules))

    @classmethod
    def from_records(
        cls, records: Iterable[Mapping[str, Any]], settings: Optional[Settings] = None
    ) -> "RuleEngine":
        """Build from store records; malformed records are logged and left out."""
        rules = []
        for record in records:
            try:
                rules.append(Rule.from_dict(record))
            except RuleError as e:
                logger.warning("rule_skipped", rule_id=record.get("id"), error=str(e))
        return cls(rules, settings)

    def _string_candidates(self, tx: Any, match_field: str) -> List[str]:
        combined = combined_text(tx)
        value = get_field(tx, match_field)
        field_value = "" if value is None else str(value).strip()
        candidates = [combined] if combined else []
        if field_value and field_value != combined:
            candidates.append(field_value)
        return candidates

    def matches(self, index: int, tx: Any) -> bool:
        rule = self.rules[index]

        if rule.match_type in NUMERIC_MATCH_TYPES:
            if rule.match_field != "amount":
                return False
            amount = get_field(tx, "amount")
            if amount is None or isinstance(amount, bool):
                return False
            amount = float(amount)
            low = float(rule.match_value)
            if rule.match_type == MatchType.GREATER_THAN:
                return amount > low
            if rule.match_type == MatchType.LESS_THAN:
                return amount < low
            high = float(rule.match_value_secondary or rule.match_value)
            return low <= amount <= high

        if rule.match_field == "amount":
            return False
        needle = rule.match_value.lower()
        candidates = self._string_candidates(tx, rule.match_field)

        if rule.match_type == MatchType.REGEX:
            timeout = self.settings.REGEX_TIMEOUT_SECONDS
            return any(safe_search(self._patterns[index], text, timeout) for text in candidates)
        for text in candidates:
            lowered = text.lower()
            if rule.match_type == MatchType.CONTAINS and needle in lowered:
                return True
            if rule.match_type == MatchType.EQUALS and lowered == needle:
                return True
            if rule.match_type == MatchType.STARTS_WITH and lowered.startswith(needle):
                return True
            if rule.match_type == MatchType.ENDS_WITH and lowered.endswith(needle):
                return True
        return False

    def evaluate(self, tx: Any) -> List[RuleAction]:
        """Actions of every matching rule, highest precedence first."""
        return [
            RuleAction(rule.action_type, rule.action_value, rule.id, rule.name)
            for index, rule in enumerate(self.rules)
            if self.matches(index, tx)
        ]

    def resolve(self, tx: Any) -> Optional[RuleOutcome]:
        """Fold matching actions: first match wins per action type, tags accumulate."""
        actions = self.evaluate(tx)
        if not actions:
            return None

        outcome = RuleOutcome(actions=actions)
        for action in actions:
            if action.type == ActionType.SET_CATEGORY and outcome.category_id is None:
                outcome.category_id = action.value
            elif action.type == ActionType.SET_MERCHANT and outcome.merchant is None:
                outcome.merchant = action.value
            elif action.type == ActionType.SET_NOTES and outcome.notes is None:
                outcome.notes = action.value
            elif action.type == ActionType.MARK_RECURRING and outcome.is_recurring is None:
                outcome.is_recurring = action.value.strip().lower() == "true"
            elif action.type == ActionType.ADD_TAG and action.value not in outcome.tags:
                outcome.tags.append(action.value)
        return outcome

    @staticmethod
    def _changes(tx: Any, outcome: RuleOutcome) -> bool:
        if outcome.category_id is not None and outcome.category_id != get_field(tx, "category_id"):
            return True
        if outcome.merchant is not None and outcome.merchant != get_field(tx, "merchant"):
            return True
        if outcome.notes is not None and outcome.notes != get_field(tx, "notes"):
            return True
        if outcome.is_recurring is not None and outcome.is_recurring != bool(
            get_field(tx, "is_recurring", False)
        ):
            return True
        existing_tags = set(get_field(tx, "tags") or ())
        return any(tag not in existing_tags for tag in outcome.tags)

    def apply_batch(self, transactions: Iterable[Any]) -> BatchResult:
        """Resolve every transaction; the caller persists the outcomes."""
        result = BatchResult()
        for tx in transactions:
            result.processed += 1
            outcome = self.resolve(tx)
            if outcome is None:
                continue
            result.matched += 1
            if self._changes(tx, outcome):
                result.updated += 1
            tx_id = get_field(tx, "id") or get_field(tx, "tx_hash")
            result.outcomes.append((tx_id, outcome))

        logger.info("rules_applied", **result.to_dict())
        return result
