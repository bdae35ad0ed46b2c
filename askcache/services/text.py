from typing import Iterable, Iterator


# ============================================================
# NORMALIZATION
# ============================================================

def normalize_question(text: str | None) -> str:
    """
    Canonical lookup key for a question.

    Trims, lower-cases and collapses runs of spaces into one.
    "  What Is  Water? " -> "what is water?"
    """
    if not text or not text.strip():
        return ""
    text = text.strip().lower()
    while "  " in text:
        text = text.replace("  ", " ")
    return text


# ============================================================
# TIME SENSITIVITY
# ============================================================

TIME_SENSITIVE_KEYWORDS = (
    # Turkish
    "bugün", "yarın", "şu an", "hava", "dolar", "euro", "kur", "haber", "skor", "maç",
    # English
    "today", "tomorrow", "now", "weather", "price", "exchange rate", "currency",
    "news", "latest", "score", "match",
)


def is_time_sensitive(text: str | None) -> bool:
    """
    True when the question mentions a topic whose answer changes over time.

    Plain substring test, so "now" also matches inside longer words.
    """
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in TIME_SENSITIVE_KEYWORDS)


# ============================================================
# KEY TERMS
# ============================================================

STOP_WORDS = frozenset({
    # English
    "the", "and", "for", "are", "was", "were", "what", "whats", "which", "who",
    "whom", "whose", "why", "how", "when", "where", "does", "did", "can",
    "could", "would", "should", "will", "shall", "may", "might", "must", "is",
    "this", "that", "these", "those", "there", "their", "them", "they", "you",
    "your", "yours", "our", "ours", "his", "her", "hers", "its", "with",
    "from", "into", "onto", "about", "than", "then", "have", "has", "had",
    "been", "being", "not", "but", "all", "any", "some", "please", "tell",
    "explain", "give", "let", "know", "just", "also", "very", "much", "many",
    "more", "most", "of", "to", "in", "on", "at", "by", "an", "a",
    # Turkish
    "bir", "bu", "şu", "o", "ve", "ile", "için", "ama", "fakat", "veya",
    "ya", "da", "de", "mi", "mı", "mu", "mü", "midir", "mıdır", "mudur",
    "müdür", "nedir", "ne", "neden", "niye", "nasıl", "nerede", "nereye",
    "nereden", "hangi", "hangisi", "kim", "kimdir", "kaç", "kadar", "gibi",
    "daha", "çok", "az", "en", "her", "hiç", "ise", "olan", "olarak", "var",
    "yok", "acaba", "lütfen", "bana", "beni", "benim", "sen", "sana", "senin",
    "biz", "siz", "onlar", "şey", "şeyi", "söyle", "anlat", "açıkla",
})

MIN_TERM_LENGTH = 3


class KeyTerms:
    """
    Salient terms of a question.

    Iterable and restartable: every iter() walks the text again, so the
    same object can be consumed more than once. Nothing is computed until
    iteration starts.
    """

    def __init__(self, text: str | None, stop_words: frozenset = STOP_WORDS, min_length: int = MIN_TERM_LENGTH):
        self.text = text or ""
        self.stop_words = stop_words
        self.min_length = min_length

    def __iter__(self) -> Iterator[str]:
        cleaned = "".join(ch if ch.isalnum() else " " for ch in self.text.lower())
        for token in cleaned.split():
            if len(token) < self.min_length:
                continue
            if token in self.stop_words:
                continue
            yield token

    def __repr__(self):
        return f"KeyTerms({self.text!r})"


def extract_key_terms(text: str | None) -> KeyTerms:
    return KeyTerms(text)


# ============================================================
# SIMILARITY MEASURES
# ============================================================

def jaccard_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    """
    |A ∩ B| / |A ∪ B|, and 0.0 when either side is empty.
    """
    set_a = set(a)
    set_b = set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def trigrams(text: str) -> set[str]:
    """
    Trigram set following pg_trgm: words are the alphanumeric runs of the
    lower-cased text, each padded with two blanks in front and one behind.
    """
    cleaned = "".join(ch if ch.isalnum() else " " for ch in (text or "").lower())
    grams = set()
    for word in cleaned.split():
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """
    Shared trigrams over all distinct trigrams of both strings, the same
    measure as pg_trgm's similarity().
    """
    grams_a = trigrams(a)
    grams_b = trigrams(b)
    if not grams_a or not grams_b:
        return 0.0
    return len(grams_a & grams_b) / len(grams_a | grams_b)
