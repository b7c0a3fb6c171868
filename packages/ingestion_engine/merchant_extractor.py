import re
from typing import Optional, Tuple

from .fields import cell_text
from .models import MerchantKind, NormalizedMerchant

UNKNOWN_MERCHANT = "Ukjent brukersted"

_WORD = "a-z0-9æøå"


class MerchantExtractor:
    def __init__(self):
        # Ordered list of known merchants (first match wins, so specific
        # aliases go before the short ones they contain)
        self.known_merchants: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
            ("REMA 1000", ("rema 1000", "rema1000", "rema")),
            ("KIWI", ("kiwi",)),
            ("MENY", ("meny",)),
            ("Coop Extra", ("coop extra", "extra")),
            ("Coop Obs", ("coop obs", "obs")),
            ("Coop Prix", ("coop prix", "prix")),
            ("Coop Mega", ("coop mega",)),
            ("Coop Marked", ("coop marked",)),
            ("SPAR", ("eurospar", "spar")),
            ("Joker", ("joker",)),
            ("Bunnpris", ("bunnpris",)),
            ("Oda", ("oda.com", "kolonial.no")),
            ("Vinmonopolet", ("vinmonopolet",)),
            ("ELKJOP", ("elkjop", "elkjøp")),
            ("POWER", ("power norge", "power.no")),
            ("CLAS OHLSON", ("clas ohlson", "clasohlson")),
            ("IKEA", ("ikea",)),
            ("XXL", ("xxl",)),
            ("Apotek 1", ("apotek 1", "apotek1")),
            ("Vitusapotek", ("vitusapotek", "vitus apotek")),
            ("Circle K", ("circle k",)),
            ("Uno-X", ("uno-x", "unox")),
            ("Esso", ("esso",)),
            ("Ruter", ("ruter",)),
            ("Vy", ("vy.no", "vy app")),
            ("Netflix", ("netflix",)),
            ("Spotify", ("spotify",)),
            ("Apple", ("apple.com", "itunes")),
            ("Google", ("google",)),
            ("PAYPAL", ("paypal",)),
            ("Klarna", ("klarna",)),
            ("SKATTEETATEN", ("skatteetaten",)),
            ("Vipps", ("vipps",)),
        )
        self._alias_patterns = tuple(
            (
                official_name,
                tuple(
                    re.compile(rf"(?<![{_WORD}]){re.escape(alias)}(?![{_WORD}])")
                    for alias in aliases
                ),
            )
            for official_name, aliases in self.known_merchants
        )

        # Applied in order to the lowercased text
        self.noise_patterns = (
            r"^(?:(?:visa|mastercard|kortkjøp|kortkjop|varekjøp|varekjop|nettgiro|"
            r"avtalegiro|giro|e-?faktura|reservasjon|betaling)\b[\s:.*-]*)+",
            r"^[a-z]?\s?\d+(?:[./-]\d+)+\s*[-:/|]?\s+",  # segmented reference prefix
            r"^\d{3,8}\s+",  # bank-internal code
            r"\*+\d{4}\b|\b\d{4}\s?[*x]{4,}\s?\d{0,4}|\bx{4}(?:\s?x{4}){2}\s?\d{4}",
            r"\b(?:kurs|rate)\s*:?\s*\d+[.,]\d+.*$",
            r"\b(?:nok|usd|eur|sek|dkk|gbp)\s+-?\d[\d\s]*[.,]\d{2}\b",
            r"\b\d{1,2}[./]\d{1,2}(?:[./]\d{2,4})?\b",
            r"\b(?:nok|kr)\.?$",
            r"\.(?:no|com|se|dk|net|org)\b",
        )
        self.stop_tokens = frozenset(
            {"visa", "nok", "kr", "kurs", "notanr", "ref", "dato", "til", "fra", "betaling"}
        )

    def match_known(self, text: Optional[str]) -> Optional[str]:
        """Canonical name of the first known merchant mentioned in text."""
        if not text:
            return None
        lowered = text.lower()
        for official_name, patterns in self._alias_patterns:
            if any(p.search(lowered) for p in patterns):
                return official_name
        return None

    @staticmethod
    def is_code_like(text: Optional[str]) -> bool:
        """Digits, punctuation and currency codes only: an internal bank code."""
        if not text or not re.search(r"\d", text):
            return False
        residue = re.sub(r"\b(?:nok|kr|sek|dkk|eur|usd)\b", " ", text.lower())
        return re.fullmatch(r"[\d\s.,:;/*#+-]*", residue) is not None

    @staticmethod
    def store_marker(text: Optional[str]) -> Optional[str]:
        """Value of an explicit 'Butikk:' marker, if present."""
        if not text:
            return None
        match = re.search(r"butikk\s*:\s*(.+?)(?:\s{2,}|$)", text, re.IGNORECASE)
        if not match:
            return None
        return match.group(1).strip() or None

    def extract(self, raw_description: str) -> str:
        if not raw_description:
            return ""

        known = self.match_known(raw_description)
        if known:
            return known

        cleaned = raw_description.lower()
        for pattern in self.noise_patterns:
            cleaned = re.sub(pattern, " ", cleaned).strip()

        cleaned = re.sub(r"[^\w&'./\s-]", " ", cleaned)
        tokens = []
        original_tokens = {t.lower(): t for t in raw_description.split()}
        for token in cleaned.split():
            token = token.strip(".-/'")
            if len(token) < 2 or token in self.stop_tokens:
                continue
            if not re.search(r"[^\W\d_]", token):
                continue
            tokens.append(_case_token(original_tokens.get(token, token)))
            if len(tokens) == 3:
                break
        return " ".join(tokens)

    def normalize(
        self, merchant_field: Optional[str], description_fallback: Optional[str] = None
    ) -> NormalizedMerchant:
        field_text = cell_text(merchant_field)
        fallback = cell_text(description_fallback)

        if field_text.casefold() == UNKNOWN_MERCHANT.casefold():
            return NormalizedMerchant(UNKNOWN_MERCHANT, field_text, MerchantKind.UNKNOWN)

        if field_text and self.is_code_like(field_text):
            brand = self.match_known(fallback)
            if brand:
                return NormalizedMerchant(brand, field_text, MerchantKind.NAME)
            return NormalizedMerchant(UNKNOWN_MERCHANT, field_text, MerchantKind.CODE)

        raw = field_text or fallback
        if not raw:
            return NormalizedMerchant(UNKNOWN_MERCHANT, "", MerchantKind.UNKNOWN)
        if self.is_code_like(raw):
            return NormalizedMerchant(UNKNOWN_MERCHANT, raw, MerchantKind.CODE)

        name = self.extract(raw)
        if not name:
            return NormalizedMerchant(UNKNOWN_MERCHANT, raw, MerchantKind.UNKNOWN)
        return NormalizedMerchant(name, raw, MerchantKind.NAME)

    def chain_key(self, merchant: Optional[str]) -> str:
        """Casefolded key that groups store instances of one chain."""
        text = (merchant or "").strip()
        if not text or text.casefold() == UNKNOWN_MERCHANT.casefold():
            return "unknown"
        text = (self.match_known(text) or text).casefold()
        if "skatteetaten" in text:
            return "skatteetaten"
        tokens = [t for t in re.split(r"[\s*#/]+", text) if t]
        if len(tokens) >= 2 and tokens[1].isdigit():
            return tokens[0]
        while len(tokens) > 1 and tokens[-1].isdigit():
            tokens.pop()
        return " ".join(tokens)

    def grouping_key(self, text: Optional[str]) -> str:
        return self.chain_key(self.normalize(text).merchant)


def _case_token(token: str) -> str:
    letters = [ch for ch in token if ch.isalpha()]
    if letters and all(ch.isupper() for ch in letters):
        return token
    return token[:1].upper() + token[1:].lower()
