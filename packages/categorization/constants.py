"""Category constants for transaction classification.

Category ids are stable strings shared with the category store. Top-level
categories have no parent; leaves point at their parent through
``DEFAULT_CATEGORY_PARENTS``.
"""

from enum import Enum
from typing import Dict, Optional


class Category(str, Enum):
    """Standard transaction categories."""

    FOOD = "cat_food"
    FOOD_GROCERIES = "cat_food_groceries"
    FOOD_RESTAURANTS = "cat_food_restaurants"
    FOOD_COFFEE = "cat_food_coffee"
    FOOD_ALCOHOL = "cat_food_alcohol"
    TRANSPORT = "cat_transport"
    TRANSPORT_PUBLIC = "cat_transport_public"
    TRANSPORT_FUEL = "cat_transport_fuel"
    TRANSPORT_PARKING = "cat_transport_parking"
    TRANSPORT_TAXI = "cat_transport_taxi_uber"
    BILLS = "cat_bills"
    BILLS_ELECTRICITY = "cat_bills_electricity"
    BILLS_INSURANCE = "cat_bills_insurance"
    BILLS_INTERNET = "cat_bills_internet"
    BILLS_MEMBERSHIPS = "cat_bills_memberships"
    BILLS_TAX = "cat_bills_tax"
    BILLS_HOUSING_SHARED = "cat_bills_housing_shared"
    SHOPPING = "cat_shopping"
    SHOPPING_CLOTHING = "cat_shopping_clothing"
    SHOPPING_ELECTRONICS = "cat_shopping_electronics"
    SHOPPING_HOME = "cat_shopping_home"
    ENTERTAINMENT = "cat_entertainment"
    ENTERTAINMENT_STREAMING = "cat_entertainment_streaming"
    ENTERTAINMENT_GAMES = "cat_entertainment_games"
    ENTERTAINMENT_EVENTS = "cat_entertainment_events"
    HEALTH = "cat_health"
    HEALTH_FITNESS = "cat_health_fitness"
    HEALTH_MEDICAL = "cat_health_medical"
    HEALTH_PHARMACY = "cat_health_pharmacy"
    HEALTH_PERSONAL_CARE = "cat_health_personal_care"
    TRAVEL = "cat_travel"
    TRAVEL_FLIGHTS = "cat_travel_flights"
    TRAVEL_LODGING = "cat_travel_lodging"
    FINANCE = "cat_finance"
    FINANCE_INVESTMENTS = "cat_finance_investments"
    INCOME = "cat_income"
    INCOME_SALARY = "cat_income_salary"
    INCOME_REFUND = "cat_income_refund"
    TRANSFER = "cat_transfer"
    OTHER = "cat_other"
    OTHER_P2P = "cat_other_p2p"


# The "Other" bucket: everything no rule or hint classified
OTHER_CATEGORY = Category.OTHER.value

INCOME_PREFIX = "cat_income"


def _parent_of(category: Category) -> Optional[str]:
    parts = category.value.split("_")
    if len(parts) <= 2:
        return None
    return "_".join(parts[:2])


DEFAULT_CATEGORY_PARENTS: Dict[str, Optional[str]] = {
    category.value: _parent_of(category) for category in Category
}


# Leaf categories that stay at full specificity when force mode collapses
# predictions to their top-level ancestor
KEEP_AS_IS = frozenset({Category.FOOD_GROCERIES.value, Category.BILLS_TAX.value})

# Longest ancestor chain followed while collapsing
MAX_ANCESTOR_STEPS = 8


# Tokens ignored by the reclassifier tokenizer
STOP_WORDS = frozenset(
    {
        "notanr",
        "kurs",
        "usd",
        "eur",
        "nok",
        "aud",
        "try",
        "sek",
        "dkk",
        "gbp",
        "chf",
        "payment",
        "betaling",
        "betal",
        "dato",
        "til",
        "fra",
        "as",
        "ab",
        "no",
        "www",
        "http",
        "https",
    }
)


# Guard lexicons: a prediction for the key category is only committed when
# the transaction text contains one of these words
GROCERY_BRAND_TOKENS = ("kiwi", "rema", "meny", "coop", "extra", "obs", "spar", "joker")
TRANSFER_APP_TOKENS = ("vipps",)
TAX_AUTHORITY_TOKENS = ("skatteetaten",)

CATEGORY_GUARDS: Dict[str, tuple] = {
    Category.FOOD_GROCERIES.value: GROCERY_BRAND_TOKENS,
    Category.OTHER_P2P.value: TRANSFER_APP_TOKENS,
    Category.BILLS_TAX.value: TAX_AUTHORITY_TOKENS,
}
