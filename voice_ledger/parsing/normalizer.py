"""
Text Normalization Helpers

Amount, currency, category, date and description extraction shared by
the deterministic parser (server side) and the refinement pass (client
side).

DESIGN DECISION: Everything here is regex + lookup tables. No locale
aware library detection is used, so the same text normalizes the same
way on every host. Patterns built from user-supplied aliases and hints
are always passed through re.escape before compiling.
"""

import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from voice_ledger.models.expense import OTHER_CATEGORY, CategoryDefinition


# =============================================================================
# CATEGORY TABLES
# =============================================================================

DEFAULT_CATEGORY_NAMES = (
    "Food",
    "Groceries",
    "Transport",
    "Entertainment",
    "Shopping",
    "Utilities",
    "Subscriptions",
    OTHER_CATEGORY,
)

# Later categories win when a keyword appears twice (walmart -> Shopping).
DEFAULT_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Food": (
        "food", "meal", "meals", "breakfast", "lunch", "dinner", "brunch",
        "snack", "snacks", "restaurant", "restaurante", "cafe", "cafeteria", "bakery",
        "coffee", "latte", "espresso", "tea", "juice", "smoothie", "water",
        "soda", "drink", "drinks", "beer", "wine", "pizza", "burger",
        "burgers", "taco", "tacos", "burrito", "sushi", "ramen", "noodles",
        "sandwich", "sandwiches", "salad", "bbq", "steak", "chicken",
        "dessert", "icecream", "donut", "donuts", "pastry", "cookies",
        "delivery", "takeout", "doordash", "ubereats", "rappi", "grubhub",
        "instacart", "didi",
    ),
    "Groceries": (
        "groceries", "grocery", "supermarket", "market", "produce",
        "costco", "walmart", "wholefoods", "whole foods", "traderjoes",
        "trader joe", "safeway", "kroger", "aldi", "instacart",
    ),
    "Transport": (
        "transport", "transportation", "commute", "commuting", "uber", "lyft",
        "taxi", "cab", "rideshare", "bus", "metro", "subway", "train",
        "tram", "rail", "ferry", "flight", "airfare", "airport", "ticket",
        "tickets", "parking", "toll", "tolls", "gas", "fuel", "diesel",
        "petrol", "ev", "charging", "transit", "bike", "bicycle", "scooter",
        "moped", "uberx", "uberxl", "bolt", "ola", "didi",
    ),
    "Entertainment": (
        "entertainment", "fun", "movie", "movies", "cinema", "theater",
        "theatre", "netflix", "spotify", "hulu", "disney", "streaming",
        "youtube", "primevideo", "gaming", "game", "games", "steam", "xbox",
        "playstation", "nintendo", "concert", "festival", "show", "shows",
        "club", "bar", "bars", "karaoke", "bowling", "arcade", "museum",
        "event", "events", "party", "cocktail", "cocktails", "drinks",
        "beer", "wine",
    ),
    "Shopping": (
        "shopping", "shop", "store", "amazon", "mall", "target", "walmart",
        "costco", "ikea", "purchase", "purchases", "bought", "buy", "clothes",
        "clothing", "shirt", "shirts", "pants", "jeans", "jacket", "hoodie",
        "shoes", "sneakers", "boots", "bag", "bags", "backpack", "makeup",
        "cosmetics", "skincare", "sephora", "electronics", "headphones",
        "phonecase", "case", "keyboard", "mouse", "monitor", "furniture",
        "decor", "homegoods", "appliance", "appliances", "book", "books",
        "notebook", "supplies", "gift", "gifts",
    ),
    "Utilities": (
        "bill", "bills", "rent", "mortgage", "lease", "utilities", "utility",
        "electric", "electricity", "power", "water", "sewer", "internet",
        "wifi", "phone", "cell", "mobile", "telecom", "insurance", "premium",
        "premiums", "loan", "loans", "credit", "debt", "payment", "payments",
        "icloud", "hosting", "domain", "server", "tax", "taxes", "hoa", "maintenance",
        "repair", "repairs", "tuition", "school", "daycare", "childcare",
        "medical", "doctor", "hospital", "pharmacy", "medicine",
    ),
    "Subscriptions": (
        "subscription", "subscriptions", "monthly", "membership", "memberships",
        "netflix", "spotify", "applemusic", "apple music", "youtube premium",
        "disney", "hulu", "primevideo", "prime video", "icloud", "chatgpt",
        "notion", "canva", "adobe", "software", "license", "licence",
    ),
    OTHER_CATEGORY: (
        "other", "misc", "miscellaneous", "unknown", "random", "cash",
        "transfer", "fee", "fees", "tip", "tips", "donation", "charity",
        "giftcard", "adjustment", "correction", "refund",
    ),
}

_EXTRA_EXPLICIT_TOKENS = (
    "bill", "bills", "utilities", "utility", "subscription", "subscriptions",
)


class CategoryContext(BaseModel):
    """
    Category lookup tables for one user.

    alias_to_category maps a lower-cased keyword or phrase to a category
    name. explicit_tokens are the aliases that count as the user naming a
    category outright (category names, user hints, a few bill words).
    """

    category_names: list[str] = Field(default_factory=list)
    category_ids_by_name: dict[str, UUID] = Field(default_factory=dict)
    alias_to_category: dict[str, str] = Field(default_factory=dict)
    explicit_tokens: set[str] = Field(default_factory=set)
    hints_by_category: dict[str, list[str]] = Field(default_factory=dict)

    @classmethod
    def build(cls, categories: Iterable[CategoryDefinition]) -> "CategoryContext":
        """Build the tables from a user's categories (defaults when empty)."""
        categories = [c for c in categories if c.name]
        if not categories:
            categories = [
                CategoryDefinition(name=name, is_default=True)
                for name in DEFAULT_CATEGORY_NAMES
            ]

        aliases = {
            keyword.lower(): category
            for category, keywords in DEFAULT_CATEGORY_KEYWORDS.items()
            for keyword in keywords
        }
        explicit = {name.lower() for name in DEFAULT_CATEGORY_NAMES}
        explicit.update(_EXTRA_EXPLICIT_TOKENS)

        names: list[str] = []
        ids: dict[str, UUID] = {}
        hints: dict[str, list[str]] = {}
        for category in categories:
            names.append(category.name)
            ids[category.name.lower()] = category.id
            aliases[category.name.lower()] = category.name
            explicit.add(category.name.lower())

        for category in categories:
            for hint in category.hint_keywords:
                phrase = hint.strip().lower()
                if not phrase:
                    continue
                aliases[phrase] = category.name
                explicit.add(phrase)
                bucket = hints.setdefault(category.name, [])
                if phrase not in bucket:
                    bucket.append(phrase)

        return cls(
            category_names=names,
            category_ids_by_name=ids,
            alias_to_category=aliases,
            explicit_tokens=explicit,
            hints_by_category={k: sorted(v) for k, v in hints.items()},
        )

    def has_category(self, name: str) -> bool:
        return name in self.category_names

    def category_id_for(self, name: str) -> Optional[UUID]:
        return self.category_ids_by_name.get(name.lower())

    def normalize_category(self, value: str) -> str:
        """Map a free-form category label onto a known category name."""
        if self.has_category(value):
            return value
        mapped = self.alias_to_category.get(value.strip().lower())
        if mapped and self.has_category(mapped):
            return mapped
        for name in self.category_names:
            if name.lower() == value.strip().lower():
                return name
        return OTHER_CATEGORY


TOKEN_PATTERN = re.compile(r"[a-zA-Z]+|\d+(?:[.,]\d+)?")


def tokenize(text: str) -> list[str]:
    """Lower-cased word and number tokens."""
    return TOKEN_PATTERN.findall(text.lower())


def match_category(text: str, context: CategoryContext) -> tuple[str, bool]:
    """
    Resolve a category from free text.

    Multi-word aliases are tried longest first so that a short keyword
    inside a longer phrase cannot steal the match; single tokens are
    tried next in reading order.

    Returns:
        (category name, whether the match came from an explicit token)
    """
    lower = text.lower()
    category = OTHER_CATEGORY
    explicit = False

    phrases = sorted(
        (alias for alias in context.alias_to_category if " " in alias),
        key=len,
        reverse=True,
    )
    for phrase in phrases:
        if re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", lower):
            category = context.alias_to_category[phrase]
            explicit = True
            break

    if category == OTHER_CATEGORY:
        for token in tokenize(lower):
            mapped = context.alias_to_category.get(token)
            if not mapped:
                continue
            category = mapped
            explicit = explicit or token in context.explicit_tokens
            if category != OTHER_CATEGORY:
                break

    if not context.has_category(category):
        category = OTHER_CATEGORY
    return category, explicit


# =============================================================================
# AMOUNTS
# =============================================================================

AMOUNT_PATTERN = re.compile(
    r"\d{1,3}(?:[.,']\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"
)

# "1:45", "12:30pm"
CLOCK_TIME_PATTERN = re.compile(r"\b\d{1,2}:\d{2}(?!\d)")

_AMOUNT_NOISE = re.compile(r"[\s$€£¥]|usd|mxn|eur|gbp|jpy|cad|brl", re.IGNORECASE)


def normalize_amount_text(text: Optional[str]) -> Optional[Decimal]:
    """
    Normalize an amount written in any common notation to a Decimal.

    "1,000.50", "1.000,50", "$1,000.50" and "1'000.50" all become
    Decimal("1000.50"). When both separators appear the last one is the
    decimal point. A lone separator followed by exactly three digits is
    a thousands separator unless the integer part is zero.

    Returns None when the text is not an amount at all.
    """
    if text is None:
        return None
    cleaned = _AMOUNT_NOISE.sub("", text).replace("'", "")
    if not cleaned or not re.fullmatch(r"[\d.,]*\d[\d.,]*", cleaned):
        return None

    if "," in cleaned and "." in cleaned:
        decimal_sep = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
        group_sep = "." if decimal_sep == "," else ","
        cleaned = cleaned.replace(group_sep, "").replace(decimal_sep, ".")
    else:
        separator = "," if "," in cleaned else "." if "." in cleaned else None
        if separator is not None:
            if cleaned.count(separator) > 1:
                cleaned = cleaned.replace(separator, "")
            else:
                integer_part, fraction = cleaned.split(separator)
                is_grouping = len(fraction) == 3 and integer_part.strip("0") != ""
                if is_grouping:
                    cleaned = integer_part + fraction
                else:
                    cleaned = f"{integer_part or '0'}.{fraction or '0'}"

    if cleaned.count(".") > 1:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def extract_amount(text: str) -> Optional[tuple[str, Decimal]]:
    """
    Pick the amount out of free text.

    Numbers that belong to a date phrase or a clock time are ignored; of
    the remaining candidates the numerically largest positive one wins.

    Returns:
        (matched substring, value) or None when no positive amount exists
    """
    excluded = date_spans(text)
    excluded.extend(m.span() for m in CLOCK_TIME_PATTERN.finditer(text))
    best: Optional[tuple[str, Decimal]] = None
    for match in AMOUNT_PATTERN.finditer(text):
        if any(start <= match.start() < end for start, end in excluded):
            continue
        value = normalize_amount_text(match.group(0))
        if value is None or value <= 0:
            continue
        if best is None or value > best[1]:
            best = (match.group(0), value)
    return best


# =============================================================================
# CURRENCY
# =============================================================================

# Most specific first; the dollar check runs last.
_CURRENCY_RULES: tuple[tuple[str, re.Pattern], ...] = (
    ("MXN", re.compile(r"mexican pesos?|\bmxn\b|\bpesos?\b", re.IGNORECASE)),
    ("EUR", re.compile(r"\beur\b|\beuros?\b|€", re.IGNORECASE)),
    ("GBP", re.compile(r"\bgbp\b|\bpounds?\b|£", re.IGNORECASE)),
    ("JPY", re.compile(r"\bjpy\b|\byen\b|¥", re.IGNORECASE)),
    ("BRL", re.compile(r"\bbrl\b|\breal(?:es)?\b|\breais\b", re.IGNORECASE)),
    ("CAD", re.compile(r"\bcad\b|canadian dollars?", re.IGNORECASE)),
    ("USD", re.compile(r"\busd\b|\bdollars?\b|\$", re.IGNORECASE)),
)


def detect_currency(text: Optional[str]) -> Optional[str]:
    """Return the ISO code of the first currency named in text, if any."""
    if not text or not text.strip():
        return None
    for code, pattern in _CURRENCY_RULES:
        if pattern.search(text):
            return code
    return None


# =============================================================================
# DATES
# =============================================================================

WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)
_WEEKDAY_ALT = "|".join(WEEKDAYS)

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_ALT = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)

RECURRING_PATTERN = re.compile(
    rf"\b(?:every|each)\s+(?:other\s+)?(?:{_WEEKDAY_ALT}|day|week|month|weekday|weekend)s?\b"
    rf"|\bweekly\b.*\b(?:{_WEEKDAY_ALT})\b"
    rf"|\b(?:{_WEEKDAY_ALT})s\b"
    r"|\b(?:cada|todos los)\s+(?:lunes|martes|mi[ée]rcoles|jueves|viernes|s[áa]bados?|domingos?)\b",
    re.IGNORECASE,
)

_YESTERDAY = re.compile(r"\byesterday\b|\blast night\b|\bayer\b|\banoche\b")
_TODAY = re.compile(r"\btoday\b|\btonight\b|\bhoy\b")
_TOMORROW = re.compile(r"\btomorrow\b")

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2,4}))?\b")
_MONTH_DAY = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s+(\d{{4}})\b)?",
    re.IGNORECASE,
)
_DAY_MONTH = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_ALT})\b(?:,?\s+(\d{{4}})\b)?",
    re.IGNORECASE,
)
_DAYS_AGO = re.compile(r"\b(\d{1,2})\s+days?\s+ago\b", re.IGNORECASE)
_WEEKDAY = re.compile(rf"\b(?:(last|next|this|on)\s+)?({_WEEKDAY_ALT})\b", re.IGNORECASE)

_DATE_PATTERNS = (_ISO_DATE, _NUMERIC_DATE, _MONTH_DAY, _DAY_MONTH, _DAYS_AGO)

FUTURE_DATE_TOLERANCE_DAYS = 180


def date_spans(text: str) -> list[tuple[int, int]]:
    """Character spans covered by absolute date phrases."""
    spans = []
    for pattern in _DATE_PATTERNS:
        spans.extend(m.span() for m in pattern.finditer(text))
    return spans


def is_recurring_phrase(text: str) -> bool:
    """True for phrasing that describes a schedule ("every Tuesday")."""
    return bool(RECURRING_PATTERN.search(text))


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _resolve_year(month: int, day: int, year: Optional[int], base: date) -> Optional[date]:
    if year is not None:
        if year < 100:
            year += 2000
        return _safe_date(year, month, day)
    candidate = _safe_date(base.year, month, day)
    if candidate and candidate > base + timedelta(days=FUTURE_DATE_TOLERANCE_DAYS):
        candidate = _safe_date(base.year - 1, month, day)
    return candidate


def _month_number(token: str) -> int:
    return MONTHS[token.lower()[:3]]


def detect_absolute_date(text: str, base: date) -> Optional[date]:
    """
    Find an explicit date phrase and resolve it against base.

    Recognized: ISO dates, numeric month/day(/year), month names with a
    day (either order, optional year), "N days ago" and weekday names.
    A bare weekday means its most recent occurrence on or before base.
    """
    match = _ISO_DATE.search(text)
    if match:
        found = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if found:
            return found

    match = _NUMERIC_DATE.search(text)
    if match:
        year = int(match.group(3)) if match.group(3) else None
        found = _resolve_year(int(match.group(1)), int(match.group(2)), year, base)
        if found:
            return found

    match = _MONTH_DAY.search(text)
    if match:
        year = int(match.group(3)) if match.group(3) else None
        found = _resolve_year(_month_number(match.group(1)), int(match.group(2)), year, base)
        if found:
            return found

    match = _DAY_MONTH.search(text)
    if match:
        year = int(match.group(3)) if match.group(3) else None
        found = _resolve_year(_month_number(match.group(2)), int(match.group(1)), year, base)
        if found:
            return found

    match = _DAYS_AGO.search(text)
    if match:
        return base - timedelta(days=int(match.group(1)))

    match = _WEEKDAY.search(text)
    if match:
        modifier = (match.group(1) or "").lower()
        target = WEEKDAYS.index(match.group(2).lower())
        if modifier == "next":
            ahead = (target - base.weekday()) % 7 or 7
            return base + timedelta(days=ahead)
        back = (base.weekday() - target) % 7
        if modifier == "last" and back == 0:
            back = 7
        return base - timedelta(days=back)

    return None


def detect_expense_date(text: str, base: date) -> Optional[date]:
    """
    The date named by text, or None when it names none.

    Relative words shift from base; otherwise an absolute date phrase is
    used. Recurring phrasing never yields a date.
    """
    lower = text.lower()
    if not lower.strip() or is_recurring_phrase(lower):
        return None
    if _YESTERDAY.search(lower):
        return base - timedelta(days=1)
    if _TODAY.search(lower):
        return base
    if _TOMORROW.search(lower):
        return base + timedelta(days=1)
    return detect_absolute_date(lower, base)


def infer_expense_date(text: str, base: date) -> date:
    """The date an expense happened, defaulting to the capture date."""
    return detect_expense_date(text, base) or base


def local_date(instant: datetime, timezone_name: Optional[str]) -> date:
    """Calendar date of an instant in an IANA zone (UTC when the zone is unknown)."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    try:
        zone = ZoneInfo(timezone_name) if timezone_name else timezone.utc
    except (ZoneInfoNotFoundError, ValueError, OSError):
        zone = timezone.utc
    return instant.astimezone(zone).date()


# =============================================================================
# DESCRIPTION AND MERCHANT
# =============================================================================

VOICE_PLACEHOLDER = "voice recording"
DESCRIPTION_LIMIT = 90
MERCHANT_LIMIT = 50
CANONICAL_LENGTH_LIMIT = 52
SHORT_DESCRIPTION_LENGTH = 3
_LETTER = re.compile(r"[^\W\d_]")

FRIENDS_PATTERN = re.compile(r"\b(friends?|amigos?|compas|banda)\b", re.IGNORECASE)
_FILLER_CUE = re.compile(r"\b(um+|uh+|like|este+|eh+|mmm+)\b", re.IGNORECASE)
_GLUE_ONLY = re.compile(r"^(on|at|in|for|with)$", re.IGNORECASE)

_COMPACT_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\b\d+(?:[.,]\d{1,2})?\b",
    r"\b(mxn|usd|eur|gbp|jpy|cad|brl)\b",
    r"[€$£¥]",
    r"\b(peso|pesos|dollar|dollars|euro|euros|pound|pounds|yen)\b",
    r"\b(umm+|um+|uh+|mmm+|like|you know|kinda|sorta)\b",
    r"\b(este+|eh+|pues|osea|o sea|como que)\b",
    r"\b(i|we|my|me|yo|nosotros|nosotras|con mis|con mi)\b",
    r"\b(went out|go out|went|go|going|salí|sali|fuí|fui|fuimos|iba)\b",
    r"\b(spent|spend|paid|pay|bought|buy|purchase|purchased|cost)\b",
    r"\b(gast[ée]|pagu[ée]|compr[ée]|cost[oó])\b",
    r"\b(on|for|to|the|and|then|that|a|an)\b",
    r"\b(en|para|por|y|que|de|del|la|el|los|las|un|una)\b",
))

_MERCHANT_PATTERNS = (
    re.compile(r"\b(?:at|en)\s+([A-Za-zÀ-ÿ0-9&'\".\- ]{2,48})", re.IGNORECASE),
    re.compile(r"\b(?:from|de)\s+([A-Za-zÀ-ÿ0-9&'\".\- ]{2,48})", re.IGNORECASE),
)
_MERCHANT_TAIL = re.compile(
    r"\b(?:with|con|for|por|and|y)\b.*$|\s+\d+(?:[.,']\d+)*\b.*$",
    re.IGNORECASE,
)

_SPANISH_SIGNALS = (
    re.compile(r"\b(gaste|gast[eé]|pague|pagu[eé]|compre|compr[eé]|amigos|restaurante|comida)\b"),
    re.compile(r"\b(hoy|ayer|mañana|anoche|con|en|para|por)\b"),
)
_ENGLISH_SIGNALS = (
    re.compile(r"\b(spent|paid|bought|friends|yesterday|today|tonight)\b"),
)


def is_voice_placeholder(text: Optional[str]) -> bool:
    return (text or "").strip().lower() == VOICE_PLACEHOLDER


def capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def _collapse_spaces(text: str) -> str:
    return re.sub(r"\s{2,}", " ", text).strip()


def compact_description_text(text: str) -> str:
    """Strip numbers, currency words, filler and verbs from a phrase."""
    text = text.strip()
    if not text:
        return ""
    for pattern in _COMPACT_PATTERNS:
        text = pattern.sub(" ", text)
    text = _collapse_spaces(text)
    text = re.sub(r"^[,.;:\-]+|[,.;:\-]+$", "", text).strip()
    if not text or re.fullmatch(r"(at|in|with|on|en|con|para|por)", text, re.IGNORECASE):
        return ""
    return capitalize_first(text)


def build_description(
    raw_text: str,
    amount_match: Optional[str],
    category: str,
    context: CategoryContext,
) -> str:
    """First-pass description: the raw text minus amount, category words and verbs."""
    text = raw_text.strip()
    if amount_match:
        text = _collapse_spaces(text.replace(amount_match, "", 1))

    category_words = sorted(
        (word for word, mapped in context.alias_to_category.items() if mapped == category),
        key=len,
        reverse=True,
    )
    for word in category_words:
        text = re.sub(rf"\b{re.escape(word)}\b", " ", text, flags=re.IGNORECASE)

    text = re.sub(r"\b(i|me|my)\b", " ", text, flags=re.IGNORECASE)
    text = re.sub(
        r"\b(spent|spend|paid|pay|bought|buy|purchase|purchased|cost|for)\b",
        " ",
        text,
        flags=re.IGNORECASE,
    )
    text = re.sub(r"\bon\b(?=\s+(?:at|in)\b)", " ", text, flags=re.IGNORECASE)
    text = _collapse_spaces(re.sub(r"\bon\s*$", " ", text, flags=re.IGNORECASE))
    if _GLUE_ONLY.match(text):
        text = ""
    return text or raw_text.strip()


def normalize_merchant_name(value: Optional[str]) -> Optional[str]:
    trimmed = _collapse_spaces(value or "")
    if not trimmed:
        return None
    return trimmed[:MERCHANT_LIMIT].strip()


def extract_merchant(text: str, category_names: Iterable[str] = ()) -> Optional[str]:
    """
    Detect a merchant from "at/en <Name>" or "from/de <Name>" phrasing.

    Category names are never accepted as a merchant.
    """
    rejected = {name.lower() for name in DEFAULT_CATEGORY_NAMES}
    rejected.update(name.lower() for name in category_names)
    for pattern in _MERCHANT_PATTERNS:
        match = pattern.search(text)
        raw = match.group(1).strip() if match else ""
        if not raw:
            continue
        merchant = _MERCHANT_TAIL.sub("", raw)
        merchant = re.sub(r"[.,;:]+$", "", merchant).strip()
        if not merchant or merchant.lower() in rejected:
            continue
        return normalize_merchant_name(merchant)
    return None


def infer_language(text: str) -> Optional[str]:
    lower = text.lower()
    if any(p.search(lower) for p in _SPANISH_SIGNALS):
        return "es"
    if any(p.search(lower) for p in _ENGLISH_SIGNALS):
        return "en"
    return None


def compose_description(
    category: str,
    merchant: Optional[str],
    has_friends: bool,
    language: Optional[str],
    fallback: str,
) -> str:
    """Canonical phrase such as "Food with friends at Peter Piper Pizza"."""
    spanish = language == "es"
    if merchant and has_friends:
        return f"{category} con amigos en {merchant}" if spanish else f"{category} with friends at {merchant}"
    if merchant:
        return f"{category} en {merchant}" if spanish else f"{category} at {merchant}"
    if has_friends:
        return f"{category} con amigos" if spanish else f"{category} with friends"
    return fallback or category


def refine_narrative(
    raw_text: str,
    category: str,
    description: str,
    merchant: Optional[str] = None,
    language_hint: Optional[str] = None,
    category_names: Iterable[str] = (),
) -> tuple[str, Optional[str]]:
    """
    Turn a rough description into a short, readable one.

    When the cleaned text still looks raw (too long, too short, identical
    to the input, full of filler) or a merchant / social cue is present,
    a canonical phrase is composed from category and merchant instead.
    Leftovers without a letter, such as "/" from "3/10", count as too short.

    Returns:
        (description, merchant)
    """
    raw_text = raw_text.strip()
    category_names = list(category_names)
    language = language_hint if language_hint in ("en", "es") else infer_language(raw_text)
    merchant = (
        normalize_merchant_name(merchant)
        or extract_merchant(raw_text, category_names)
        or extract_merchant(description, category_names)
    )
    has_friends = bool(FRIENDS_PATTERN.search(raw_text))

    cleaned = (
        compact_description_text(description or raw_text)
        or compact_description_text(raw_text)
        or category
    )
    if len(cleaned) < SHORT_DESCRIPTION_LENGTH or not _LETTER.search(cleaned):
        cleaned = category
    compose = (
        has_friends
        or bool(merchant)
        or len(cleaned) > CANONICAL_LENGTH_LIMIT
        or cleaned.lower() == raw_text.lower()
        or bool(_FILLER_CUE.search(raw_text))
    )
    if compose:
        cleaned = compose_description(category, merchant, has_friends, language, cleaned)
    return cleaned[:DESCRIPTION_LIMIT].strip(), merchant
