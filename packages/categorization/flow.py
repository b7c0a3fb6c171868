"""
Money-flow classification: income, expense, transfer or unknown.

Heuristics are intentionally conservative. Felleskonto (shared household
account) and Straksbetaling (instant payment) lines are product decisions:
they are real spending or income and never internal transfers.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Optional

TRANSFER_PATTERNS = (
    re.compile(r"\boverf(?:o|ø)ring\b", re.IGNORECASE),
    re.compile(r"\btil\s+konto\b", re.IGNORECASE),
    re.compile(r"\bfra\s+konto\b", re.IGNORECASE),
    re.compile(r"\begen\s+konto\b", re.IGNORECASE),
    re.compile(r"\bmellom\s+egne\s+konti\b", re.IGNORECASE),
    re.compile(r"\binnskudd\b", re.IGNORECASE),
    re.compile(r"\btransfer\b", re.IGNORECASE),
    re.compile(r"\bto\s+account\b", re.IGNORECASE),
    re.compile(r"\bfrom\s+account\b", re.IGNORECASE),
    re.compile(r"\binternal\s+transfer\b", re.IGNORECASE),
)

TRANSFER_SIGNALS = (
    "overforing",
    "til konto",
    "fra konto",
    "egen konto",
    "mellom egne konti",
    "internal transfer",
    "to account",
    "from account",
)

INCOME_SIGNALS = (
    "lonn",
    "salary",
    "payroll",
    "utbytte",
    "rente",
    "interest",
    "nav",
    "utbetaling",
    "pensjon",
    "trygd",
    "refund",
    "tilbakebetaling",
)

REFUND_SIGNALS = (
    "refusjon",
    "tilbake",
    "retur",
    "kredit",
    "revers",
    "refund",
    "return",
)

PURCHASE_SIGNALS = (
    "sats",
    "google",
    "apple",
    "spotify",
    "netflix",
    "wolt",
    "foodora",
    "narvesen",
    "xxl",
    "cutters",
    "skatteetaten",
    "rema",
    "kiwi",
    "meny",
    "coop",
    "spar",
    "joker",
    "vinmonopolet",
    "shell",
)

_FOLD = str.maketrans({"ø": "o", "æ": "ae", "å": "a"})


def normalize_for_match(text: Optional[str]) -> str:
    lowered = (text or "").lower().translate(_FOLD)
    decomposed = unicodedata.normalize("NFKD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


def _starts_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}", text) is not None


def is_felleskonto(description: Optional[str]) -> bool:
    return "felleskonto" in normalize_for_match(description)


def is_straksbetaling(description: Optional[str]) -> bool:
    return "straksbetaling" in normalize_for_match(description)


def detect_is_transfer(description: Optional[str]) -> bool:
    """True when the description reads like a move between the user's own accounts."""
    text = (description or "").strip()
    if not text or is_felleskonto(text) or is_straksbetaling(text):
        return False
    return any(pattern.search(text) for pattern in TRANSFER_PATTERNS)


def is_purchase_section(section_label: Optional[str]) -> bool:
    label = normalize_for_match(section_label)
    return "kjop" in label and "uttak" in label


def is_refund_like(description: Optional[str]) -> bool:
    text = normalize_for_match(description)
    return bool(text) and any(signal in text for signal in REFUND_SIGNALS)


def is_payment_like(description: Optional[str], section_label: Optional[str]) -> bool:
    """Card-bill payments and top-ups, e.g. "Innbetaling bankgiro"."""
    text = normalize_for_match(description)
    label = normalize_for_match(section_label)
    if "bankgiro" in text and ("innbetaling" in text or "betaling" in text):
        return True
    return "innbetaling" in label and any(word in label for word in ("bankgiro", "giro", "betaling"))


def looks_like_transfer(description: Optional[str], section_label: Optional[str]) -> bool:
    if is_felleskonto(description):
        return False
    text = normalize_for_match(description)
    label = normalize_for_match(section_label)
    if any(signal in text or signal in label for signal in TRANSFER_SIGNALS):
        return True
    return is_payment_like(description, section_label)


def looks_like_income(description: Optional[str]) -> bool:
    text = normalize_for_match(description)
    return any(_starts_word(text, signal) for signal in INCOME_SIGNALS)


def looks_like_purchase(description: Optional[str]) -> bool:
    text = normalize_for_match(description)
    if not text:
        return False
    if any(marker in text for marker in ("kortkjop", "varekjop", "bankax", "visa")):
        return True
    if text.startswith("vipps"):
        return True
    if any(signal in text for signal in PURCHASE_SIGNALS):
        return True
    # "GOOGLE *YouTube" style merchant tokens
    return "*" in (description or "") and not looks_like_income(description)


def looks_like_merchant_text(description: Optional[str]) -> bool:
    raw = (description or "").strip()
    if not raw or not re.search(r"[^\W\d_]", raw):
        return False
    text = normalize_for_match(raw)
    if text.startswith(("innbetaling", "utbetaling")):
        return False
    return not any(signal in text for signal in ("overforing", "til konto", "fra konto"))


@dataclass(frozen=True)
class FlowDecision:
    flow_type: str  # income | expense | transfer | unknown
    reason: str
    section_label: Optional[str] = None


def classify_flow(
    description: Optional[str], amount: float, section_label: Optional[str] = None
) -> FlowDecision:
    """Decide the flow type of one transaction; the first matching rule wins."""
    amount = float(amount or 0)

    def decide(flow_type: str, reason: str) -> FlowDecision:
        return FlowDecision(flow_type, reason, section_label)

    if is_straksbetaling(description):
        if amount > 0:
            return decide("income", "straksbetaling-positive")
        return decide("expense", "straksbetaling-nonpositive")
    if is_felleskonto(description):
        return decide("expense", "felleskonto-expense")
    if looks_like_transfer(description, section_label):
        return decide("transfer", "transfer-signals")
    if is_purchase_section(section_label):
        return decide("expense", "section-purchase")
    if amount > 0 and is_refund_like(description):
        return decide("income", "refund-positive")
    if looks_like_income(description):
        return decide("income", "income-keywords")
    if looks_like_purchase(description):
        return decide("expense", "purchase-like")
    if amount > 0 and looks_like_merchant_text(description):
        return decide("expense", "merchantish-positive")
    if amount < 0:
        return decide("expense", "fallback-negative")
    return decide("unknown", "unknown")


def normalize_amount(flow_type: str, amount: float) -> Dict[str, Any]:
    """Apply the sign convention: expenses negative, income positive."""
    if flow_type == "expense":
        return {"amount": -abs(amount), "is_transfer": False, "is_excluded": False}
    if flow_type == "income":
        return {"amount": abs(amount), "is_transfer": False, "is_excluded": False}
    if flow_type == "transfer":
        return {"amount": amount, "is_transfer": True, "is_excluded": True}
    return {"amount": amount, "is_transfer": False, "is_excluded": False}
