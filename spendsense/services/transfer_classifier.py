"""Transfer detection: self transfers, wallet loads and person-to-person payments.

Runs ahead of generic rule matching so that "UPI to a friend" is not mistaken
for spending at a merchant. Sub-classifiers are tried in a fixed order and
the first hit wins: self, wallet, peer-to-peer, then a generic bank-transfer
fallback. A description that matches more than one of them resolves to the
earliest in that order.
"""

import re
from dataclasses import dataclass

from spendsense.services.normalization import normalize

# Payment handles of known merchants / businesses (never P2P)
MERCHANT_VPA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"zomato", r"swiggy", r"uber", r"ola", r"amazon", r"flipkart",
        r"paytm.*merchant", r"razorpay", r"billdesk", r"phonepe.*merchant",
        r"bharatpe", r"cred", r"slice", r"simpl",
        r"@yesb0", r"@yesbiz",
        r"merchant", r"business", r"pvt", r"ltd", r"llp", r"corp",
    )
]

BUSINESS_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"pvt", r"ltd", r"llp", r"corp", r"inc", r"company", r"enterprises")
]

SELF_TRANSFER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bself\b",
        r"\bown\s*a/?c",
        r"\bown\s*account",
        r"\bto\s*self\b",
        r"\binternal\s*transfer",
        r"\bcc\s*payment",
        r"\bcredit\s*card\s*payment",
        r"\bcc\s*bill",
        r"\bcard\s*bill",
        r"hdfc\s*cc", r"icici\s*cc", r"axis\s*cc", r"sbi\s*cc", r"kotak\s*cc",
        r"\bsavings?\s*to\s*current",
        r"\bcurrent\s*to\s*savings?",
        r"\bfund\s*transfer\s*self",
        r"\bown\s*transfer",
    )
]

WALLET_LOAD_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"paytm\s*(wallet|load|add|topup)",
        r"phonepe\s*(wallet|load|add|topup)",
        r"gpay\s*(wallet|load|add|topup)",
        r"amazon\s*pay\s*(load|add|topup)",
        r"wallet\s*(load|topup|add)",
        r"add\s*money",
        r"load\s*wallet",
        r"mobikwik",
        r"freecharge",
    )
]

BANK_TRANSFER_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (r"\bneft\b", r"\brtgs\b", r"\bimps\b", r"\binft\b", r"\bift\b")
]

PERSONAL_NAME_INDICATORS = [
    re.compile(r"^[A-Z][a-z]+\s+[A-Z]$"),  # "Ravindra S"
    re.compile(r"^[A-Z][a-z]+\s+[A-Z][a-z]+$"),  # "Amit Kumar"
    re.compile(r"^(Mr|Mrs|Ms|Dr)\s", re.IGNORECASE),
    re.compile(r"\b(mom|dad|papa|mummy|bhai|didi|bro|sis)\b", re.IGNORECASE),
]
SHORT_PERSONAL_NAME = re.compile(r"^[A-Z][a-z]+(\s+[A-Z][a-z]*){0,2}$")

PERSONAL_VPA_PATTERNS = [
    re.compile(r"^\d{10}@"),  # phone-number handles
    re.compile(r"^[a-z]+\d*@(ok|yl|pt|gp)", re.IGNORECASE),
    re.compile(r"^[a-z]+\.[a-z]+@", re.IGNORECASE),  # name.surname@
    re.compile(r"^[a-z]{3,15}@", re.IGNORECASE),
]

TRANSFER_KEYWORDS = ("upi", "neft", "rtgs", "imps", "transfer", "inft", "ift", "fund")
WALLET_KEYWORDS = ("paytm", "phonepe", "gpay", "wallet", "load", "topup", "add money")

_RAIL_MARKER = re.compile(r"\b(UPI|NEFT|RTGS|IMPS)\b", re.IGNORECASE)
_VPA = re.compile(r"([a-zA-Z0-9._-]+@[a-zA-Z0-9]+)")
_UPI_NAME = re.compile(r"UPI/([A-Z][A-Z\s]+?)/(.*@|payment|order)", re.IGNORECASE)
_NEFT_NAME = re.compile(r"NEFT\s*(TO\s+)?([A-Z][A-Z\s]+)", re.IGNORECASE)
_IMPS_NAME = re.compile(r"IMPS/([A-Z][A-Z\s]+?)/", re.IGNORECASE)
_GENERIC_NAME = re.compile(r"\b([A-Z][a-z]+\s+[A-Z][a-z]*)\b")
_NAME_NOISE = re.compile(r"\b(UPI|NEFT|IMPS|RTGS|PAYMENT|FROM|TO|FOR)\b", re.IGNORECASE)

_WALLET_NAMES = (
    (re.compile(r"paytm"), "Paytm"),
    (re.compile(r"phonepe"), "PhonePe"),
    (re.compile(r"gpay|googlepay"), "Google Pay"),
    (re.compile(r"amazon\s*pay"), "Amazon Pay"),
    (re.compile(r"mobikwik"), "MobiKwik"),
    (re.compile(r"freecharge"), "FreeCharge"),
)

SELF_CONFIDENCE = 0.95
WALLET_CONFIDENCE = 0.90
P2P_HANDLE_CONFIDENCE = 0.90
P2P_NAME_CONFIDENCE = 0.85
GENERIC_TRANSFER_CONFIDENCE = 0.70


@dataclass(frozen=True)
class TransferResult:
    tx_kind: str  # transfer_self, transfer_p2p, transfer_wallet
    subcategory_slug: str  # transfer-self, transfer-p2p, transfer-wallet
    confidence: float
    explanation: str
    counterparty_name: str | None = None


class TransferClassifier:
    """Classify a single description. Stateless; one instance can be reused."""

    def classify(self, description: str | None, normalized: str | None = None) -> TransferResult | None:
        description = description or ""
        if normalized is None:
            normalized = normalize(description)

        if not self._transfer_likely(description, normalized):
            return None

        return (
            self._classify_self(description, normalized)
            or self._classify_wallet(description, normalized)
            or self._classify_p2p(description)
            or self._classify_generic(description)
        )

    # ── Sub-classifiers ─────────────────────────────────

    def _transfer_likely(self, description: str, normalized: str) -> bool:
        return (
            any(kw in normalized for kw in TRANSFER_KEYWORDS)
            or any(kw in normalized for kw in WALLET_KEYWORDS)
            or bool(_RAIL_MARKER.search(description))
            or extract_vpa(description) is not None
        )

    def _classify_self(self, description: str, normalized: str) -> TransferResult | None:
        if not _any_match(SELF_TRANSFER_PATTERNS, description, normalized):
            return None
        return TransferResult(
            tx_kind="transfer_self",
            subcategory_slug="transfer-self",
            confidence=SELF_CONFIDENCE,
            explanation="Self/own account transfer",
        )

    def _classify_wallet(self, description: str, normalized: str) -> TransferResult | None:
        if not _any_match(WALLET_LOAD_PATTERNS, description, normalized):
            return None
        wallet = detect_wallet_name(description)
        return TransferResult(
            tx_kind="transfer_wallet",
            subcategory_slug="transfer-wallet",
            confidence=WALLET_CONFIDENCE,
            counterparty_name=wallet,
            explanation=f"Wallet load ({wallet})" if wallet else "Wallet load",
        )

    def _classify_p2p(self, description: str) -> TransferResult | None:
        vpa = extract_vpa(description)
        name = extract_name(description)

        if looks_like_merchant(vpa, name):
            return None

        if vpa and is_personal_vpa(vpa):
            return TransferResult(
                tx_kind="transfer_p2p",
                subcategory_slug="transfer-p2p",
                confidence=P2P_HANDLE_CONFIDENCE,
                counterparty_name=name or name_from_vpa(vpa),
                explanation=f"UPI transfer to individual ({name or 'personal handle'})",
            )

        if name and is_personal_name(name) and is_bank_transfer(description):
            return TransferResult(
                tx_kind="transfer_p2p",
                subcategory_slug="transfer-p2p",
                confidence=P2P_NAME_CONFIDENCE,
                counterparty_name=name,
                explanation=f"Transfer to individual ({name})",
            )
        return None

    def _classify_generic(self, description: str) -> TransferResult | None:
        if not is_bank_transfer(description):
            return None
        name = extract_name(description)
        if looks_like_merchant(None, name):
            return None
        return TransferResult(
            tx_kind="transfer_p2p",
            subcategory_slug="transfer-p2p",
            confidence=GENERIC_TRANSFER_CONFIDENCE,
            counterparty_name=name,
            explanation=f"Bank transfer to {name}" if name else "Bank transfer",
        )


# ── Extraction helpers ──────────────────────────────────


def _any_match(patterns: list[re.Pattern], *texts: str) -> bool:
    return any(p.search(t) for p in patterns for t in texts)


def extract_vpa(description: str) -> str | None:
    match = _VPA.search(description or "")
    return match.group(1).lower() if match else None


def extract_name(description: str) -> str | None:
    """Pull a counterparty name out of common rail formats (UPI/NEFT/IMPS)."""
    if match := _UPI_NAME.search(description):
        name = match.group(1).strip()
        if 2 < len(name) < 50:
            return clean_name(name)

    if match := _NEFT_NAME.search(description):
        name = match.group(2).strip()
        if 2 < len(name) < 50:
            return clean_name(name)

    if match := _IMPS_NAME.search(description):
        name = match.group(1).strip()
        if 2 < len(name) < 30:
            return clean_name(name)

    if match := _GENERIC_NAME.search(description):
        return match.group(1)
    return None


def clean_name(name: str) -> str | None:
    name = _NAME_NOISE.sub("", name)
    name = re.sub(r"\s+", " ", name).strip()
    return name or None


def name_from_vpa(vpa: str) -> str | None:
    local_part = vpa.split("@", 1)[0]
    if local_part.isdigit():
        return None
    words = re.sub(r"[0-9_.-]", " ", local_part).split()
    return " ".join(w.capitalize() for w in words) or None


def is_personal_vpa(vpa: str) -> bool:
    return any(p.search(vpa) for p in PERSONAL_VPA_PATTERNS)


def is_personal_name(name: str) -> bool:
    return any(p.search(name) for p in PERSONAL_NAME_INDICATORS) or bool(
        SHORT_PERSONAL_NAME.search(name)
    )


def looks_like_merchant(vpa: str | None, name: str | None) -> bool:
    if vpa and any(p.search(vpa) for p in MERCHANT_VPA_PATTERNS):
        return True
    if name and any(p.search(name) for p in BUSINESS_NAME_PATTERNS):
        return True
    return False


def is_bank_transfer(description: str) -> bool:
    return any(p.search(description) for p in BANK_TRANSFER_PATTERNS)


def detect_wallet_name(description: str) -> str | None:
    lowered = description.lower()
    for pattern, wallet in _WALLET_NAMES:
        if pattern.search(lowered):
            return wallet
    return None
