"""
Auto-reclassification of the "Other" bucket.

A multinomial Naive Bayes model is trained from scratch on every call from
transactions the user already categorized, then used to propose categories
for rows still sitting in Other. Proposals are only made when the model is
confident (probability and log-margin thresholds) and the category passes
domain guardrails. Force mode drops the thresholds but collapses the
prediction to its top-level category first.

Nothing is written here: the caller persists ``ReclassifyOutcome.proposals``.
"""

import base64
import binascii
import json
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import structlog

from packages.core.config import Settings, get_settings

from .constants import (
    CATEGORY_GUARDS,
    INCOME_PREFIX,
    KEEP_AS_IS,
    MAX_ANCESTOR_STEPS,
    OTHER_CATEGORY,
    STOP_WORDS,
)

logger = structlog.get_logger(__name__)

MIN_TOKEN_LENGTH = 3
MAX_TOKEN_LENGTH = 32

FetchPage = Callable[[Optional[str], int], Tuple[Sequence[Mapping[str, Any]], Optional[str]]]


def build_combined_text(merchant: Optional[str], description: Optional[str]) -> str:
    return " ".join(f"{merchant or ''} {description or ''}".lower().split())


def tokenize(text: Optional[str]) -> List[str]:
    normalized = " ".join((text or "").lower().split())
    if not normalized:
        return []
    return [
        token
        for token in re.split(r"[\W_]+", normalized)
        if MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH and token not in STOP_WORDS
    ]


def softmax_top2(log_a: float, log_b: float) -> Tuple[float, float]:
    """Numerically stable softmax over two log scores."""
    peak = max(log_a, log_b)
    exp_a = math.exp(log_a - peak)
    exp_b = math.exp(log_b - peak)
    total = exp_a + exp_b
    return exp_a / total, exp_b / total


@dataclass
class CategoryStats:
    docs: int = 0
    token_total: int = 0
    token_counts: Counter = field(default_factory=Counter)


@dataclass(frozen=True)
class Prediction:
    category_id: str
    probability: float
    margin: float
    second_category_id: Optional[str] = None


class NaiveBayesModel:
    """Multinomial Naive Bayes over bag-of-token transaction texts."""

    def __init__(self, alpha: float = 1.0, min_docs: int = 10):
        self.alpha = alpha
        self.min_docs = min_docs
        self.stats: Dict[str, CategoryStats] = {}
        self.vocabulary: Set[str] = set()
        self.total_docs = 0

    def fit(self, examples: Iterable[Any]) -> "NaiveBayesModel":
        """
        Train on ``{category_id, text}`` mappings or ``(category_id, text)`` pairs.

        Examples in the Other bucket, or without any usable token, are
        ignored. Categories with fewer than ``min_docs`` documents are
        dropped as too sparse to score.
        """
        stats: Dict[str, CategoryStats] = {}
        vocabulary: Set[str] = set()
        for example in examples:
            if isinstance(example, Mapping):
                category_id, text = example.get("category_id"), example.get("text")
            else:
                category_id, text = example
            if not category_id or category_id == OTHER_CATEGORY:
                continue
            tokens = tokenize(text)
            if not tokens:
                continue
            entry = stats.setdefault(category_id, CategoryStats())
            entry.docs += 1
            entry.token_total += len(tokens)
            entry.token_counts.update(tokens)
            vocabulary.update(tokens)

        dropped = sorted(cat for cat, entry in stats.items() if entry.docs < self.min_docs)
        for category_id in dropped:
            del stats[category_id]

        self.stats = stats
        self.vocabulary = vocabulary
        self.total_docs = sum(entry.docs for entry in stats.values())
        logger.info(
            "reclassifier_trained",
            categories=len(stats),
            dropped_sparse=len(dropped),
            vocabulary=len(vocabulary),
            docs=self.total_docs,
        )
        return self

    @property
    def categories(self) -> List[str]:
        return list(self.stats)

    def log_posteriors(self, tokens: Sequence[str]) -> List[Tuple[str, float]]:
        """Per-category log posterior, best first."""
        alpha = self.alpha
        vocab_size = max(1, len(self.vocabulary))
        n_categories = len(self.stats)
        scores = []
        for category_id, entry in self.stats.items():
            log_p = math.log((entry.docs + alpha) / (self.total_docs + alpha * n_categories))
            denominator = entry.token_total + alpha * vocab_size
            for token in tokens:
                log_p += math.log((entry.token_counts.get(token, 0) + alpha) / denominator)
            scores.append((category_id, log_p))
        # ties resolve by category id so scoring is deterministic
        scores.sort(key=lambda item: (-item[1], item[0]))
        return scores

    def score(self, text: Optional[str]) -> Optional[Prediction]:
        tokens = tokenize(text)
        if not tokens or len(self.stats) < 2 or self.total_docs == 0:
            return None
        ranked = self.log_posteriors(tokens)
        (top_category, top_log_p), (second_category, second_log_p) = ranked[0], ranked[1]
        probability, _ = softmax_top2(top_log_p, second_log_p)
        return Prediction(
            category_id=top_category,
            probability=probability,
            margin=top_log_p - second_log_p,
            second_category_id=second_category,
        )


def train_model(
    examples: Iterable[Any],
    settings: Optional[Settings] = None,
    min_docs: Optional[int] = None,
) -> NaiveBayesModel:
    settings = settings or get_settings()
    return NaiveBayesModel(
        alpha=settings.RECLASSIFY_ALPHA,
        min_docs=settings.RECLASSIFY_MIN_DOCS if min_docs is None else min_docs,
    ).fit(examples)


def passes_guards(category_id: str, amount: float, text: Optional[str]) -> bool:
    """Domain guardrails a prediction must pass before it is proposed."""
    lowered = " ".join((text or "").lower().split())
    markers = CATEGORY_GUARDS.get(category_id)
    if markers and not any(re.search(rf"\b{re.escape(marker)}\b", lowered) for marker in markers):
        return False
    # Income categories are never put on expenses
    if category_id.startswith(INCOME_PREFIX) and not float(amount or 0) > 0:
        return False
    return True


def collapse_to_top_level(category_id: str, parents: Optional[Mapping[str, Optional[str]]]) -> str:
    """Walk up to the top-level ancestor unless the leaf is safe at full specificity."""
    if not category_id or category_id in KEEP_AS_IS or not parents:
        return category_id
    current = category_id
    for _ in range(MAX_ANCESTOR_STEPS):
        parent = parents.get(current)
        if not parent:
            return current
        current = parent
    return current


def encode_cursor(offset: int) -> str:
    payload = json.dumps({"offset": offset}).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        offset = int(data["offset"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e
    if offset < 0:
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return offset


def paginate_sequence(items: Sequence[Mapping[str, Any]]) -> FetchPage:
    """fetch_page over an in-memory list, with offset cursors."""

    def fetch_page(cursor: Optional[str], limit: int):
        offset = decode_cursor(cursor)
        page = list(items[offset:offset + limit])
        end = offset + len(page)
        return page, (encode_cursor(end) if end < len(items) else None)

    return fetch_page


@dataclass(frozen=True)
class ReclassifyProposal:
    transaction_id: Any
    category_id: str
    probability: float
    margin: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "category_id": self.category_id,
            "probability": round(self.probability, 4),
            "margin": round(self.margin, 4),
        }


@dataclass
class ReclassifyOutcome:
    scanned: int = 0
    updated: int = 0
    remaining: int = 0
    next_cursor: Optional[str] = None
    skipped_no_score: int = 0
    skipped_by_guard: int = 0
    skipped_low_confidence: int = 0
    proposals: List[ReclassifyProposal] = field(default_factory=list)
    category_distribution: Dict[str, int] = field(default_factory=dict)

    def absorb(self, page: "ReclassifyOutcome") -> None:
        self.scanned += page.scanned
        self.updated += page.updated
        self.skipped_no_score += page.skipped_no_score
        self.skipped_by_guard += page.skipped_by_guard
        self.skipped_low_confidence += page.skipped_low_confidence
        self.proposals.extend(page.proposals)
        for category_id, count in page.category_distribution.items():
            self.category_distribution[category_id] = self.category_distribution.get(category_id, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        top = sorted(self.category_distribution.items(), key=lambda item: (-item[1], item[0]))
        return {
            "scanned": self.scanned,
            "updated": self.updated,
            "remaining": self.remaining,
            "next_cursor": self.next_cursor,
            "skipped_no_score": self.skipped_no_score,
            "skipped_by_guard": self.skipped_by_guard,
            "skipped_low_confidence": self.skipped_low_confidence,
            "top_target_categories": [
                {"category_id": category_id, "count": count} for category_id, count in top[:15]
            ],
            "proposals": [proposal.to_dict() for proposal in self.proposals],
        }


class AutoReclassifier:
    """Turns model predictions for Other-bucket rows into guarded proposals."""

    def __init__(
        self,
        model: NaiveBayesModel,
        force: bool = False,
        min_confidence: float = 0.75,
        min_margin: float = 1.2,
        parents: Optional[Mapping[str, Optional[str]]] = None,
    ):
        self.model = model
        self.force = force
        self.min_confidence = min_confidence
        self.min_margin = min_margin
        self.parents = parents or {}

    @staticmethod
    def item_text(item: Mapping[str, Any]) -> str:
        if item.get("text"):
            return str(item["text"])
        return build_combined_text(item.get("merchant"), item.get("description"))

    def run_page(self, items: Iterable[Mapping[str, Any]], exclude_ids: Set[Any] = frozenset()) -> ReclassifyOutcome:
        page = ReclassifyOutcome()
        for item in items:
            transaction_id = item.get("id")
            if transaction_id in exclude_ids:
                continue
            page.scanned += 1

            text = self.item_text(item)
            prediction = self.model.score(text)
            if prediction is None:
                page.skipped_no_score += 1
                continue

            if self.force:
                category_id = collapse_to_top_level(prediction.category_id, self.parents)
            elif prediction.probability < self.min_confidence or prediction.margin < self.min_margin:
                page.skipped_low_confidence += 1
                continue
            else:
                category_id = prediction.category_id

            # collapsing a leaf of Other leaves it in Other
            if category_id == OTHER_CATEGORY:
                page.skipped_no_score += 1
                continue
            if not passes_guards(category_id, item.get("amount", 0), text):
                page.skipped_by_guard += 1
                continue

            page.proposals.append(
                ReclassifyProposal(transaction_id, category_id, prediction.probability, prediction.margin)
            )
            page.category_distribution[category_id] = page.category_distribution.get(category_id, 0) + 1
            page.updated += 1
        return page


def reclassify_other(
    training: Iterable[Any],
    fetch_page: FetchPage,
    *,
    force: bool = False,
    cursor: Optional[str] = None,
    parents: Optional[Mapping[str, Optional[str]]] = None,
    settings: Optional[Settings] = None,
    min_confidence: Optional[float] = None,
    min_margin: Optional[float] = None,
    min_docs: Optional[int] = None,
    page_size: Optional[int] = None,
    max_rounds: Optional[int] = None,
    exclude_ids: Iterable[Any] = (),
    model: Optional[NaiveBayesModel] = None,
) -> ReclassifyOutcome:
    """
    Propose categories for the Other bucket, one page per round.

    Args:
        training: Already-categorized ``{category_id, text}`` examples
        fetch_page: ``(cursor, limit) -> (items, next_cursor)`` over Other rows
        force: Skip confidence thresholds and collapse to top-level categories
        cursor: Resume point returned by a previous call
        parents: Category id -> parent id map, used in force mode
        exclude_ids: Rows to pass over (e.g. already proposed in an earlier phase)

    Returns:
        Merged outcome; ``next_cursor`` is set when rounds ran out before the
        bucket was exhausted.
    """
    settings = settings or get_settings()
    model = model or train_model(training, settings, min_docs)
    reclassifier = AutoReclassifier(
        model,
        force=force,
        min_confidence=settings.RECLASSIFY_MIN_CONFIDENCE if min_confidence is None else min_confidence,
        min_margin=settings.RECLASSIFY_MIN_MARGIN if min_margin is None else min_margin,
        parents=parents,
    )
    page_size = page_size or settings.RECLASSIFY_PAGE_SIZE
    max_rounds = max_rounds or settings.RECLASSIFY_MAX_ROUNDS
    excluded = set(exclude_ids)

    outcome = ReclassifyOutcome()
    for round_number in range(1, max_rounds + 1):
        items, cursor = fetch_page(cursor, page_size)
        page = reclassifier.run_page(items, excluded)
        outcome.absorb(page)
        logger.info(
            "reclassify_round",
            round=round_number,
            force=force,
            scanned=page.scanned,
            updated=page.updated,
            skipped_by_guard=page.skipped_by_guard,
            skipped_low_confidence=page.skipped_low_confidence,
        )
        if not cursor:
            break

    outcome.next_cursor = cursor
    outcome.remaining = outcome.scanned - outcome.updated
    return outcome


@dataclass
class TwoPhaseOutcome:
    safe: ReclassifyOutcome
    force: Optional[ReclassifyOutcome] = None

    @property
    def proposals(self) -> List[ReclassifyProposal]:
        return self.safe.proposals + (self.force.proposals if self.force else [])

    @property
    def remaining(self) -> int:
        return self.force.remaining if self.force else self.safe.remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safe": self.safe.to_dict(),
            "force": self.force.to_dict() if self.force else None,
            "updated": len(self.proposals),
            "remaining": self.remaining,
        }


def reclassify_two_phase(
    training: Iterable[Any],
    fetch_page: FetchPage,
    *,
    parents: Optional[Mapping[str, Optional[str]]] = None,
    settings: Optional[Settings] = None,
    force_trigger: Optional[int] = None,
    **kwargs,
) -> TwoPhaseOutcome:
    """Safe thresholds first; force mode only if too much is left in Other."""
    settings = settings or get_settings()
    trigger = settings.RECLASSIFY_FORCE_TRIGGER if force_trigger is None else force_trigger
    model = train_model(training, settings, kwargs.pop("min_docs", None))
    excluded = set(kwargs.pop("exclude_ids", ()))

    safe = reclassify_other(
        training,
        fetch_page,
        force=False,
        parents=parents,
        settings=settings,
        model=model,
        exclude_ids=excluded,
        **kwargs,
    )
    result = TwoPhaseOutcome(safe=safe)
    if safe.remaining <= trigger:
        logger.info("reclassify_force_skipped", remaining=safe.remaining, trigger=trigger)
        return result

    already_proposed = {proposal.transaction_id for proposal in safe.proposals}
    result.force = reclassify_other(
        training,
        fetch_page,
        force=True,
        parents=parents,
        settings=settings,
        model=model,
        exclude_ids=excluded | already_proposed,
        **kwargs,
    )
    return result
