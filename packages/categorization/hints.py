import re
import unicodedata
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .constants import Category

_FOLD = str.maketrans({"ø": "o", "æ": "ae", "å": "a"})


def normalize_hint_text(text) -> str:
    """Lowercase, fold Norwegian letters and strip diacritics."""
    lowered = str(text or "").lower().translate(_FOLD)
    decomposed = unicodedata.normalize("NFKD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


@dataclass(frozen=True)
class HintRule:
    any_of: Tuple[str, ...]
    category: str
    # "expense" needs amount < 0, "income" needs amount > 0
    direction: Optional[str] = None
    all_of: Tuple[str, ...] = ()


class CategoryHintEngine:
    def __init__(self):
        # Direction-sensitive and multi-keyword rules, most specific first
        self.specific_rules: Tuple[HintRule, ...] = (
            HintRule(("google play", "apple.com/bill"), Category.BILLS_MEMBERSHIPS.value, "expense"),
            HintRule(("bolt", "uber", "taxi"), Category.TRANSPORT_TAXI.value, "expense"),
            HintRule(("paypal :tidal", "tidalmusica", "tidal"), Category.ENTERTAINMENT_STREAMING.value),
            HintRule(("felleskonto",), Category.BILLS_HOUSING_SHARED.value),
            HintRule(("talkmore",), Category.BILLS_INTERNET.value),
            HintRule(("clasohlson", "clas ohlson", "clas ohl"), Category.SHOPPING_HOME.value),
            HintRule(("flamingotours", "flamingo tours"), Category.TRAVEL.value),
            HintRule(
                ("innbet utland", "utlandsbetaling"),
                Category.BILLS.value,
                all_of=("omkostninger",),
            ),
            HintRule(("visa-kostnad", "arspris kort med visa", "kort med visa -"), Category.BILLS.value),
            HintRule(("vita", "arnika"), Category.HEALTH_PERSONAL_CARE.value),
            HintRule(("pensjon eller trygd",), Category.INCOME_SALARY.value, "income"),
            # Trumf bonus paid out is a refund, Trumf on a purchase line is groceries
            HintRule(("trumf",), Category.INCOME_REFUND.value, "income"),
            HintRule(("trumf",), Category.FOOD_GROCERIES.value),
            HintRule(("klarna", "paypal :"), Category.SHOPPING.value),
            HintRule(("lonn", "salary", "payroll"), Category.INCOME_SALARY.value, "income"),
            HintRule(("refusjon", "tilbakebetaling", "refund"), Category.INCOME_REFUND.value, "income"),
        )

        # Keyword -> category; first match in insertion order wins
        self.keyword_rules: Mapping[str, str] = MappingProxyType({
            # Groceries
            "kiwi": Category.FOOD_GROCERIES.value,
            "rema": Category.FOOD_GROCERIES.value,
            "meny": Category.FOOD_GROCERIES.value,
            "coop": Category.FOOD_GROCERIES.value,
            "extra": Category.FOOD_GROCERIES.value,
            "obs": Category.FOOD_GROCERIES.value,
            "spar": Category.FOOD_GROCERIES.value,
            "joker": Category.FOOD_GROCERIES.value,
            "bunnpris": Category.FOOD_GROCERIES.value,
            "oda.com": Category.FOOD_GROCERIES.value,
            # Eating out
            "foodora": Category.FOOD_RESTAURANTS.value,
            "wolt": Category.FOOD_RESTAURANTS.value,
            "los tacos": Category.FOOD_RESTAURANTS.value,
            "munchies": Category.FOOD_RESTAURANTS.value,
            "peppes": Category.FOOD_RESTAURANTS.value,
            "espresso house": Category.FOOD_COFFEE.value,
            "kaffebrenneriet": Category.FOOD_COFFEE.value,
            "starbucks": Category.FOOD_COFFEE.value,
            "narvesen": Category.FOOD_COFFEE.value,
            "7-eleven": Category.FOOD_COFFEE.value,
            "vinmonopolet": Category.FOOD_ALCOHOL.value,
            # Transport
            "ruter": Category.TRANSPORT_PUBLIC.value,
            "flytoget": Category.TRANSPORT_PUBLIC.value,
            "vy.no": Category.TRANSPORT_PUBLIC.value,
            "entur": Category.TRANSPORT_PUBLIC.value,
            "circle k": Category.TRANSPORT_FUEL.value,
            "uno-x": Category.TRANSPORT_FUEL.value,
            "esso": Category.TRANSPORT_FUEL.value,
            "shell": Category.TRANSPORT_FUEL.value,
            "easypark": Category.TRANSPORT_PARKING.value,
            "apcoa": Category.TRANSPORT_PARKING.value,
            "onepark": Category.TRANSPORT_PARKING.value,
            # Entertainment
            "netflix": Category.ENTERTAINMENT_STREAMING.value,
            "spotify": Category.ENTERTAINMENT_STREAMING.value,
            "hbomax": Category.ENTERTAINMENT_STREAMING.value,
            "hbo": Category.ENTERTAINMENT_STREAMING.value,
            "viaplay": Category.ENTERTAINMENT_STREAMING.value,
            "disney": Category.ENTERTAINMENT_STREAMING.value,
            "tv 2": Category.ENTERTAINMENT_STREAMING.value,
            "steam": Category.ENTERTAINMENT_GAMES.value,
            "playstation": Category.ENTERTAINMENT_GAMES.value,
            "nintendo": Category.ENTERTAINMENT_GAMES.value,
            "ticketmaster": Category.ENTERTAINMENT_EVENTS.value,
            # Health
            "sats": Category.HEALTH_FITNESS.value,
            "elixia": Category.HEALTH_FITNESS.value,
            "evo": Category.HEALTH_FITNESS.value,
            "apotek": Category.HEALTH_PHARMACY.value,
            "vitusapotek": Category.HEALTH_PHARMACY.value,
            "legevakt": Category.HEALTH_MEDICAL.value,
            "tannlege": Category.HEALTH_MEDICAL.value,
            "cutters": Category.HEALTH_PERSONAL_CARE.value,
            # Bills
            "telia": Category.BILLS_INTERNET.value,
            "telenor": Category.BILLS_INTERNET.value,
            "ice.no": Category.BILLS_INTERNET.value,
            "tibber": Category.BILLS_ELECTRICITY.value,
            "fjordkraft": Category.BILLS_ELECTRICITY.value,
            "hafslund": Category.BILLS_ELECTRICITY.value,
            "gjensidige": Category.BILLS_INSURANCE.value,
            "fremtind": Category.BILLS_INSURANCE.value,
            "storebrand livsforsikring": Category.BILLS_INSURANCE.value,
            "skatteetaten": Category.BILLS_TAX.value,
            # Shopping
            "elkjop": Category.SHOPPING_ELECTRONICS.value,
            "power.no": Category.SHOPPING_ELECTRONICS.value,
            "komplett": Category.SHOPPING_ELECTRONICS.value,
            "anthropic": Category.SHOPPING_ELECTRONICS.value,
            "cloudflare": Category.SHOPPING_ELECTRONICS.value,
            "cubus": Category.SHOPPING_CLOTHING.value,
            "dressmann": Category.SHOPPING_CLOTHING.value,
            "zara": Category.SHOPPING_CLOTHING.value,
            "h&m": Category.SHOPPING_CLOTHING.value,
            "ikea": Category.SHOPPING_HOME.value,
            "jysk": Category.SHOPPING_HOME.value,
            "biltema": Category.SHOPPING_HOME.value,
            "xxl": Category.SHOPPING.value,
            # Travel
            "norwegian air": Category.TRAVEL_FLIGHTS.value,
            "wideroe": Category.TRAVEL_FLIGHTS.value,
            "sas": Category.TRAVEL_FLIGHTS.value,
            "airbnb": Category.TRAVEL_LODGING.value,
            "booking.com": Category.TRAVEL_LODGING.value,
            "scandic": Category.TRAVEL_LODGING.value,
            "thon hotel": Category.TRAVEL_LODGING.value,
            # Finance
            "nordnet": Category.FINANCE_INVESTMENTS.value,
            "firi": Category.FINANCE_INVESTMENTS.value,
        })

        self._patterns: Dict[str, re.Pattern] = {}
        for rule in self.specific_rules:
            for needle in rule.any_of + rule.all_of:
                self._compile(needle)
        for keyword in self.keyword_rules:
            self._compile(keyword)

    def _compile(self, needle: str) -> None:
        if needle in self._patterns:
            return
        # word boundary check for short keywords ("obs" inside "jobs", "sas" inside "sasong")
        if len(needle) <= 4:
            pattern = rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])"
        else:
            pattern = re.escape(needle)
        self._patterns[needle] = re.compile(pattern)

    def _has(self, text: str, needle: str) -> bool:
        return self._patterns[needle].search(text) is not None

    @staticmethod
    def _direction_ok(direction: Optional[str], amount: float) -> bool:
        if direction == "expense":
            return amount < 0
        if direction == "income":
            return amount > 0
        return True

    def hint(self, text: str, amount: float) -> Optional[str]:
        """
        Category suggested by the transaction text and the sign of its amount.
        Returns None when nothing matches.
        """
        normalized = normalize_hint_text(text)
        if not normalized:
            return None
        amount = float(amount or 0)

        for rule in self.specific_rules:
            if not self._direction_ok(rule.direction, amount):
                continue
            if not any(self._has(normalized, needle) for needle in rule.any_of):
                continue
            if all(self._has(normalized, needle) for needle in rule.all_of):
                return rule.category

        for keyword, category in self.keyword_rules.items():
            if self._has(normalized, keyword):
                return category
        return None


# Lexicons are read-only, so one shared engine is safe
DEFAULT_HINT_ENGINE = CategoryHintEngine()


def get_category_hint(text: str, amount: float) -> Optional[str]:
    return DEFAULT_HINT_ENGINE.hint(text, amount)
