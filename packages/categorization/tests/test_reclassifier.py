import base64
import json

import pytest

from packages.core.config import Settings
from packages.categorization.constants import DEFAULT_CATEGORY_PARENTS
from packages.categorization.reclassifier import (
    AutoReclassifier,
    NaiveBayesModel,
    collapse_to_top_level,
    decode_cursor,
    encode_cursor,
    paginate_sequence,
    passes_guards,
    reclassify_other,
    reclassify_two_phase,
    softmax_top2,
    tokenize,
    train_model,
)

GROCERIES = "cat_food_groceries"
STREAMING = "cat_entertainment_streaming"

GROCERY_TEXTS = [
    "kiwi majorstuen varekjop",
    "rema sorenga varekjop",
    "meny storo varekjop",
    "coop extra sagene varekjop",
    "kiwi torshov varekjop",
    "rema grunerlokka",
    "joker bislett",
    "spar sagene",
    "meny colosseum",
    "coop obs lorenskog",
]

STREAMING_TEXTS = [
    "netflix abonnement",
    "spotify premium abonnement",
    "netflix.com abonnement",
    "hbo max abonnement",
    "viaplay abonnement",
    "spotify family",
    "disney plus abonnement",
    "netflix monthly",
    "viaplay total",
    "spotify premium",
]


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def training():
    examples = [{"category_id": GROCERIES, "text": text} for text in GROCERY_TEXTS]
    examples += [(STREAMING, text) for text in STREAMING_TEXTS]
    # Other-bucket rows never train the model
    examples.append({"category_id": "cat_other", "text": "kiwi kiwi kiwi"})
    return examples


@pytest.fixture
def model(training, settings):
    return train_model(training, settings)


@pytest.fixture
def other_rows():
    return [
        {"id": "t1", "merchant": "KIWI", "description": "Sagene varekjop", "amount": -50.0},
        {"id": "t2", "merchant": "Netflix", "description": "abonnement", "amount": -129.0},
        {"id": "t3", "text": "ukjent butikk", "amount": -100.0},
        {"id": "t4", "text": "sagene varekjop", "amount": -80.0},
    ]


class TestTokenize:
    def test_splits_and_drops_noise(self):
        assert tokenize("NETFLIX.COM Betaling 12.03 kurs USD") == ["netflix", "com"]

    def test_keeps_unicode_words(self):
        assert tokenize("Kjøp_på_Elkjøp") == ["kjøp", "elkjøp"]

    def test_drops_overlong_tokens(self):
        assert tokenize("x" * 33 + " rema") == ["rema"]

    @pytest.mark.parametrize("text", ["", None, "ab 12 ,.", "   "])
    def test_empty(self, text):
        assert tokenize(text) == []


def test_softmax_top2():
    assert softmax_top2(0.0, 0.0) == (0.5, 0.5)
    first, second = softmax_top2(-1000.0, -1003.0)
    assert first == pytest.approx(0.9526, abs=1e-4)
    assert first + second == pytest.approx(1.0)


class TestNaiveBayesModel:
    def test_other_bucket_is_not_a_category(self, model):
        assert sorted(model.categories) == [STREAMING, GROCERIES]
        assert model.total_docs == 20

    def test_held_out_grocery_scores_top(self, model):
        prediction = model.score("kiwi sagene varekjop")
        assert prediction.category_id == GROCERIES
        assert prediction.second_category_id == STREAMING
        assert prediction.probability > 0.9
        assert prediction.margin > 3.0

    def test_unseen_tokens_are_not_confident(self, model):
        prediction = model.score("ukjent butikk")
        assert prediction.probability < 0.6

    def test_no_tokens_means_no_score(self, model):
        assert model.score("ab") is None
        assert model.score(None) is None

    def test_sparse_categories_are_pruned(self, training, settings):
        training = training + [("cat_travel_flights", "norwegian air shuttle")] * 3
        model = train_model(training, settings)
        assert "cat_travel_flights" not in model.categories

        lenient = train_model(training, settings, min_docs=3)
        assert "cat_travel_flights" in lenient.categories

    def test_single_category_cannot_score(self):
        model = NaiveBayesModel(min_docs=1).fit([(GROCERIES, "kiwi sagene")])
        assert model.score("kiwi") is None

    def test_scoring_is_deterministic(self, model):
        assert model.log_posteriors(["ukjent"]) == model.log_posteriors(["ukjent"])


class TestGuards:
    def test_grocery_needs_brand_word(self):
        assert passes_guards(GROCERIES, -50, "KIWI Sagene")
        assert not passes_guards(GROCERIES, -50, "sagene varekjop")
        assert not passes_guards(GROCERIES, -50, "extrakost sagene")

    def test_income_needs_positive_amount(self):
        assert passes_guards("cat_income_salary", 42000, "lonn")
        assert not passes_guards("cat_income_salary", -42000, "lonn")
        assert not passes_guards("cat_income_refund", 0, "refusjon")

    def test_tax_and_p2p(self):
        assert passes_guards("cat_bills_tax", -5000, "Skatteetaten restskatt")
        assert not passes_guards("cat_bills_tax", -5000, "restskatt")
        assert passes_guards("cat_other_p2p", -200, "Vipps Kari")

    def test_unguarded_category(self):
        assert passes_guards(STREAMING, -129, "anything")


class TestCollapse:
    @pytest.mark.parametrize(
        "category_id, expected",
        [
            (STREAMING, "cat_entertainment"),
            ("cat_transport", "cat_transport"),
            (GROCERIES, GROCERIES),
            ("cat_bills_tax", "cat_bills_tax"),
        ],
    )
    def test_default_tree(self, category_id, expected):
        assert collapse_to_top_level(category_id, DEFAULT_CATEGORY_PARENTS) == expected

    def test_deep_and_cyclic_trees(self):
        assert collapse_to_top_level("a", {"a": "b", "b": "c", "c": None}) == "c"
        assert collapse_to_top_level("a", {"a": "b", "b": "a"}) in ("a", "b")

    def test_without_tree(self):
        assert collapse_to_top_level(STREAMING, None) == STREAMING


class TestAutoReclassifier:
    def test_safe_mode(self, model, other_rows):
        page = AutoReclassifier(model).run_page(other_rows)

        assert page.scanned == 4
        assert [(p.transaction_id, p.category_id) for p in page.proposals] == [
            ("t1", GROCERIES),
            ("t2", STREAMING),
        ]
        assert page.skipped_low_confidence == 1
        assert page.skipped_by_guard == 1
        assert page.updated == 2

    def test_force_mode_collapses_and_still_guards(self, model, other_rows):
        page = AutoReclassifier(model, force=True, parents=DEFAULT_CATEGORY_PARENTS).run_page(other_rows)

        assert [(p.transaction_id, p.category_id) for p in page.proposals] == [
            ("t1", GROCERIES),
            ("t2", "cat_entertainment"),
            ("t3", "cat_entertainment"),
        ]
        assert page.skipped_low_confidence == 0
        assert page.skipped_by_guard == 1

    def test_force_collapse_into_other_is_not_proposed(self, model):
        rows = [{"id": "t3", "text": "ukjent butikk", "amount": -100.0}]
        page = AutoReclassifier(model, force=True, parents={STREAMING: "cat_other"}).run_page(rows)
        assert page.proposals == []
        assert page.skipped_no_score == 1

    def test_excluded_rows_are_not_scanned(self, model, other_rows):
        page = AutoReclassifier(model).run_page(other_rows, exclude_ids={"t1", "t2"})
        assert page.scanned == 2
        assert page.proposals == []

    def test_unscorable_rows(self, model):
        page = AutoReclassifier(model).run_page([{"id": 1, "description": "ab"}])
        assert page.skipped_no_score == 1


class TestCursors:
    def test_round_trip(self):
        assert decode_cursor(encode_cursor(40)) == 40
        assert decode_cursor(None) == 0

    @pytest.mark.parametrize(
        "cursor",
        [
            base64.urlsafe_b64encode(json.dumps({"page": 2}).encode()).decode(),
            base64.urlsafe_b64encode(json.dumps({"offset": -1}).encode()).decode(),
            base64.urlsafe_b64encode(b"not json").decode(),
        ],
    )
    def test_invalid_cursor(self, cursor):
        with pytest.raises(ValueError, match="Invalid cursor"):
            decode_cursor(cursor)

    def test_same_cursor_same_page(self):
        fetch_page = paginate_sequence([{"id": n} for n in range(5)])
        first, cursor = fetch_page(None, 2)
        assert [row["id"] for row in first] == [0, 1]
        assert fetch_page(cursor, 2) == fetch_page(cursor, 2)
        last, end = fetch_page(encode_cursor(4), 2)
        assert [row["id"] for row in last] == [4]
        assert end is None


class TestReclassifyOther:
    def test_rounds_and_resume(self, training, settings, other_rows):
        fetch_page = paginate_sequence(other_rows + [{"id": "t5", "text": "spotify premium"}])

        first = reclassify_other(training, fetch_page, settings=settings, page_size=2, max_rounds=2)
        assert first.scanned == 4
        assert first.updated == 2
        assert first.remaining == 2
        assert first.next_cursor is not None

        rest = reclassify_other(
            training, fetch_page, settings=settings, page_size=2, cursor=first.next_cursor
        )
        assert rest.scanned == 1
        assert [p.transaction_id for p in rest.proposals] == ["t5"]
        assert rest.next_cursor is None

    def test_thresholds_can_be_overridden(self, training, settings, other_rows):
        outcome = reclassify_other(
            training, paginate_sequence(other_rows), settings=settings, min_confidence=0.99, min_margin=5
        )
        assert outcome.updated == 0
        assert outcome.skipped_low_confidence == 4

    def test_summary(self, training, settings, other_rows):
        data = reclassify_other(training, paginate_sequence(other_rows), settings=settings).to_dict()
        assert data["updated"] == 2
        assert data["top_target_categories"] == [
            {"category_id": STREAMING, "count": 1},
            {"category_id": GROCERIES, "count": 1},
        ]
        assert data["proposals"][0]["transaction_id"] == "t1"


class TestTwoPhase:
    def test_force_phase_runs_above_trigger(self, training, settings, other_rows):
        outcome = reclassify_two_phase(
            training,
            paginate_sequence(other_rows),
            parents=DEFAULT_CATEGORY_PARENTS,
            settings=settings,
            force_trigger=1,
        )

        assert outcome.safe.updated == 2
        assert outcome.force is not None
        assert outcome.force.scanned == 2
        assert [p.transaction_id for p in outcome.force.proposals] == ["t3"]
        assert [p.transaction_id for p in outcome.proposals] == ["t1", "t2", "t3"]
        assert outcome.remaining == 1
        assert outcome.to_dict()["updated"] == 3

    def test_force_phase_skipped_at_or_below_trigger(self, training, settings, other_rows):
        outcome = reclassify_two_phase(
            training,
            paginate_sequence(other_rows),
            parents=DEFAULT_CATEGORY_PARENTS,
            settings=settings,
            force_trigger=2,
        )
        assert outcome.force is None
        assert outcome.remaining == 2
        assert outcome.to_dict()["force"] is None
