"""Transaction description normalization.

Turns a free-text bank description into a short, comparable, lower-case token
sequence used by every matcher downstream (rules, embeddings, learning).
The function is total: any input, including None, yields a string.
"""

import re

# ── Noise patterns (applied to the lower-cased text, in order) ──────

UPI_PATTERN = re.compile(r"\b(upi|vpa|@)\w*", re.IGNORECASE)
REFERENCE_PATTERN = re.compile(
    r"\b(ref|refno|ref no|reference|txn id|txnid|transaction id)[\s:]*[\w-]+", re.IGNORECASE
)
DATE_PATTERN = re.compile(r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b")
TIME_PATTERN = re.compile(r"\b\d{1,2}:\d{2}(:\d{2})?\s*(am|pm)?\b", re.IGNORECASE)
AMOUNT_PATTERN = re.compile(r"₹[\d,]+(\.\d+)?|\brs\.?\s*[\d,]+(\.\d+)?", re.IGNORECASE)
ACCOUNT_PATTERN = re.compile(r"\b(ac|acc|account|a/c)[\s:]*[\w-]+", re.IGNORECASE)
TRANSACTION_ID_PATTERN = re.compile(r"\b(txn|transaction|id|tid)[\s:]*[\w-]+", re.IGNORECASE)

_NOISE_PATTERNS = (
    UPI_PATTERN,
    REFERENCE_PATTERN,
    DATE_PATTERN,
    TIME_PATTERN,
    AMOUNT_PATTERN,
    ACCOUNT_PATTERN,
    TRANSACTION_ID_PATTERN,
)

_WHITESPACE = re.compile(r"\s+")
_SPECIAL_CHARS = re.compile(r"[^\w\s-]")
_CASE_BOUNDARY = re.compile(r"([a-z])([A-Z])")

# ── Dictionaries ────────────────────────────────────────

# Ordered: more specific extractors first
MERCHANT_EXTRACTORS = [
    # Food delivery, including names embedded in payment handles
    re.compile(r"\b(swiggy|zomato|uber\s*eats|dominos|mcdonalds|starbucks|dunkin)", re.IGNORECASE),
    re.compile(r"(pay)?zomato", re.IGNORECASE),
    re.compile(r"(pay)?swiggy", re.IGNORECASE),
    re.compile(r"starbucks(in)?", re.IGNORECASE),
    # Transport
    re.compile(r"\b(uber|ola|rapido|irctc|makemytrip)\b", re.IGNORECASE),
    # Shopping
    re.compile(r"\b(amazon|flipkart|myntra|ajio|nykaa|meesho)\b", re.IGNORECASE),
    re.compile(r"(grofers|blinkit|zepto|instamart|bigbasket)", re.IGNORECASE),
    # Utilities
    re.compile(r"\b(airtel|jio|vodafone|vi|bsnl)\b", re.IGNORECASE),
    re.compile(r"\b(netflix|spotify|prime|hotstar|disney|youtube)\b", re.IGNORECASE),
    # Payments
    re.compile(r"\b(paytm|phonepe|gpay|razorpay)\b", re.IGNORECASE),
    # Housing
    re.compile(r"\b(rentomojo|furlenco|nestaway)\b", re.IGNORECASE),
]

MERCHANT_ALIASES = {
    "payzomato": "zomato",
    "payswiggy": "swiggy",
    "starbucksin": "starbucks",
    "grofersindia": "groceries blinkit",
    "grofers": "groceries blinkit",
}

FINANCIAL_ABBREVIATIONS = {
    "intdiv": "interim dividend",
    "findiv": "final dividend",
    "div": "dividend",
    "int": "interest",
    "sal": "salary",
    "cred": "credit",
    "deb": "debit",
    "xfer": "transfer",
    "txn": "transaction",
    "emi": "emi loan",
    "neft": "neft transfer",
    "rtgs": "rtgs transfer",
    "imps": "imps transfer",
    "ach": "ach clearing",
}

# Both halves of compound brand names, so concatenations split cleanly
KNOWN_BRANDS = (
    "asian paints steel motors bank "
    "tata infosys wipro hcl tech mahindra reliance "
    "hdfc icici axis kotak sbi pnb bob canara union "
    "itc nestle hindustan unilever britannia dabur marico "
    "bharti airtel jio vodafone idea "
    "maruti hyundai honda toyota suzuki bajaj hero tvs "
    "amazon flipkart myntra ajio zomato swiggy uber ola "
    "lulu mall market"
).split()

MAX_TOKENS = 6
MIN_TOKEN_LENGTH = 2
MIN_SPLIT_WORD_LENGTH = 6
MAX_SPLIT_ITERATIONS = 3
MERCHANT_CONTEXT_WORDS = 3

# Longest first so "intdiv" wins over "int" and "div"
_ABBREVIATIONS_BY_LENGTH = sorted(FINANCIAL_ABBREVIATIONS, key=len, reverse=True)
_SUFFIX_ABBREVIATIONS = [a for a in _ABBREVIATIONS_BY_LENGTH if len(a) >= 3]
_ABBREVIATION_PATTERNS = [
    (re.compile(rf"\b{re.escape(abbrev)}\b"), FINANCIAL_ABBREVIATIONS[abbrev])
    for abbrev in _ABBREVIATIONS_BY_LENGTH
]
_ALIAS_PATTERNS = [
    (re.compile(re.escape(alias), re.IGNORECASE), canonical)
    for alias, canonical in MERCHANT_ALIASES.items()
]


def normalize(description: str | None) -> str:
    """Normalize a raw transaction description.

    Returns at most six space-separated lower-case tokens of two characters
    or more, or an empty string for blank input.
    """
    if description is None:
        return ""
    original = str(description).strip()
    if not original:
        return ""

    text = _split_case_boundaries(original).lower()
    for pattern in _NOISE_PATTERNS:
        text = pattern.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    text = _SPECIAL_CHARS.sub(" ", text)
    text = split_concatenated_words(text)
    text = expand_abbreviations(text)
    text = extract_merchant_name(text).strip()

    words = [w for w in text.split() if len(w) >= MIN_TOKEN_LENGTH]
    return " ".join(words[:MAX_TOKENS])


# ── Word splitting ──────────────────────────────────────


def _split_case_boundaries(text: str) -> str:
    """Split CamelCase words ("RaviKumar" -> "Ravi Kumar") before lower-casing.

    Words carrying a known brand or merchant are left whole; the brand and
    alias passes split those more reliably.
    """
    return " ".join(_split_case_word(word) for word in text.split(" "))


def _split_case_word(word: str) -> str:
    if len(word) < MIN_SPLIT_WORD_LENGTH:
        return word
    lowered = word.lower()
    if any(brand in lowered for brand in KNOWN_BRANDS):
        return word
    if any(p.search(lowered) for p in MERCHANT_EXTRACTORS):
        return word
    return _CASE_BOUNDARY.sub(r"\1 \2", word)


def split_concatenated_words(text: str) -> str:
    """Split glued words such as "asianpaintsintdiv" into "asian paints intdiv"."""
    result = text
    for _ in range(MAX_SPLIT_ITERATIONS):
        new_result = " ".join(_split_word(w) for w in result.split())
        if new_result == result:
            break
        result = new_result
    return result


def _split_word(word: str) -> str:
    if len(word) < MIN_SPLIT_WORD_LENGTH:
        return word
    split = _split_by_brand(word)
    if split != word:
        return split
    return _split_by_financial_suffix(word)


def _split_by_brand(word: str) -> str:
    for brand in KNOWN_BRANDS:
        if brand in word and word != brand:
            before, after = word.split(brand, 1)
            parts = []
            if len(before.strip()) >= 2:
                parts.append(before.strip())
            parts.append(brand)
            if len(after.strip()) >= 2:
                parts.append(after.strip())
            if len(parts) > 1:
                return " ".join(parts)
    return word


def _split_by_financial_suffix(word: str) -> str:
    if word in FINANCIAL_ABBREVIATIONS:
        return word
    for abbrev in _SUFFIX_ABBREVIATIONS:
        if word == abbrev or not word.endswith(abbrev):
            continue
        prefix = word[: -len(abbrev)]
        # Short prefixes are usually fragments of a real word, not a glued token
        if len(prefix) >= 3:
            return f"{prefix} {abbrev}"
    return word


# ── Canonicalization ────────────────────────────────────


def expand_abbreviations(text: str) -> str:
    for pattern, expansion in _ABBREVIATION_PATTERNS:
        text = pattern.sub(expansion, text)
    return text


def extract_merchant_name(text: str) -> str:
    """Canonicalize merchant aliases and move a known merchant to the front.

    Words that followed the merchant stay next to it ("pos amazon prime"
    becomes "amazon prime pos") so multi-word brand keywords survive.
    """
    for pattern, canonical in _ALIAS_PATTERNS:
        text = pattern.sub(canonical, text)

    for pattern in MERCHANT_EXTRACTORS:
        match = pattern.search(text)
        if not match:
            continue
        merchant = match.group(0).strip().lower()
        following = pattern.sub("", text[match.end():]).split()
        preceding = pattern.sub("", text[: match.start()]).split()
        context = [w for w in following + preceding if len(w) >= MIN_TOKEN_LENGTH]
        if context:
            return f"{merchant} {' '.join(context[:MERCHANT_CONTEXT_WORDS])}"
        return merchant
    return text


def meaningful_pattern(normalized: str, max_words: int = 3) -> str:
    """Derive a short learning pattern: first words of 3+ chars, skipping numbers."""
    words = [w for w in normalized.split() if len(w) >= 3 and not w.isdigit()]
    return " ".join(words[:max_words])
