"""Normalization functions for Bible Bee scripture and grade ingestion.

All functions accept None and never raise on malformed text; they return
the appropriate type, an empty string, or None.
"""

from __future__ import annotations

import re
import unicodedata

# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: object) -> int | None:
    """Parse an integer from an int or a numeric string; None on failure.

    Floats with no fractional part ("3.0" from spreadsheet exports) are
    accepted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    v = trim(str(value))
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        pass
    try:
        f = float(v)
    except ValueError:
        return None
    return int(f) if f.is_integer() else None


# ---------------------------------------------------------------------------
# Book-name table
#
# Canonical names are lowercase.  Aliases are compared after punctuation
# removal and whitespace collapse, with any leading ordinal already turned
# into a digit ("first john", "i john", "1st john" -> "1 john").
# ---------------------------------------------------------------------------

_BOOKS: dict[str, tuple[str, ...]] = {
    # Old Testament
    "genesis": ("gen", "ge", "gn"),
    "exodus": ("exod", "exo", "ex"),
    "leviticus": ("lev", "le", "lv"),
    "numbers": ("num", "nu", "nm", "nb"),
    "deuteronomy": ("deut", "deu", "dt"),
    "joshua": ("josh", "jos", "jsh"),
    "judges": ("judg", "jdg", "jg", "jdgs"),
    "ruth": ("rth", "ru"),
    "1 samuel": ("1 sam", "1 sa", "1 sm", "1sam"),
    "2 samuel": ("2 sam", "2 sa", "2 sm", "2sam"),
    "1 kings": ("1 kgs", "1 ki", "1 kin"),
    "2 kings": ("2 kgs", "2 ki", "2 kin"),
    "1 chronicles": ("1 chron", "1 chr", "1 ch"),
    "2 chronicles": ("2 chron", "2 chr", "2 ch"),
    "ezra": ("ezr",),
    "nehemiah": ("neh", "ne"),
    "esther": ("esth", "est", "es"),
    "job": ("jb",),
    "psalms": ("psalm", "ps", "psa", "pss", "psm"),
    "proverbs": ("prov", "pro", "prv", "pr"),
    "ecclesiastes": ("eccles", "eccl", "ecc", "ec", "qoh"),
    "song of solomon": ("song of songs", "song", "sos", "so", "canticles", "song of sol"),
    "isaiah": ("isa", "is"),
    "jeremiah": ("jer", "je", "jr"),
    "lamentations": ("lam", "la"),
    "ezekiel": ("ezek", "eze", "ezk"),
    "daniel": ("dan", "da", "dn"),
    "hosea": ("hos", "ho"),
    "joel": ("jl",),
    "amos": ("am",),
    "obadiah": ("obad", "ob"),
    "jonah": ("jnh", "jon"),
    "micah": ("mic", "mc"),
    "nahum": ("nah", "na"),
    "habakkuk": ("hab", "hb"),
    "zephaniah": ("zeph", "zep", "zp"),
    "haggai": ("hag", "hg"),
    "zechariah": ("zech", "zec", "zc"),
    "malachi": ("mal", "ml"),
    # New Testament
    "matthew": ("matt", "mat", "mt"),
    "mark": ("mrk", "mar", "mk", "mr"),
    "luke": ("luk", "lk"),
    "john": ("jhn", "jn"),
    "acts": ("act", "ac"),
    "romans": ("rom", "ro", "rm"),
    "1 corinthians": ("1 cor", "1 co", "1cor"),
    "2 corinthians": ("2 cor", "2 co", "2cor"),
    "galatians": ("gal", "ga"),
    "ephesians": ("eph", "ephes"),
    "philippians": ("phil", "php", "pp"),
    "colossians": ("col", "co"),
    "1 thessalonians": ("1 thess", "1 thes", "1 th"),
    "2 thessalonians": ("2 thess", "2 thes", "2 th"),
    "1 timothy": ("1 tim", "1 ti"),
    "2 timothy": ("2 tim", "2 ti"),
    "titus": ("tit", "ti"),
    "philemon": ("philem", "phm", "pm"),
    "hebrews": ("heb",),
    "james": ("jas", "jm"),
    "1 peter": ("1 pet", "1 pe", "1 pt"),
    "2 peter": ("2 pet", "2 pe", "2 pt"),
    "1 john": ("1 jn", "1 jhn", "1 jo"),
    "2 john": ("2 jn", "2 jhn", "2 jo"),
    "3 john": ("3 jn", "3 jhn", "3 jo"),
    "jude": ("jud", "jd"),
    "revelation": ("rev", "re", "revelations"),
}

_BOOK_ALIASES: dict[str, str] = {}
for _canonical, _aliases in _BOOKS.items():
    _BOOK_ALIASES[_canonical] = _canonical
    for _alias in _aliases:
        _BOOK_ALIASES[_alias] = _canonical

_ORDINAL_PREFIXES = {
    "i": "1", "first": "1", "1st": "1",
    "ii": "2", "second": "2", "2nd": "2",
    "iii": "3", "third": "3", "3rd": "3",
}

# Book part ends where the chapter/verse locator starts: the first digit
# that is not part of a leading "1 ", "2 " or "3 " book prefix.
_REFERENCE_RE = re.compile(r"^(?P<book>(?:[1-3] ?)?[a-z][a-z ]*?) ?(?P<loc>\d.*)?$")
_DASHES_RE = re.compile(r"[\u2010-\u2015\u2212]")


def canonical_book(name: str | None) -> str | None:
    """Return the canonical lowercase book name for a book token, or None.

    "1 Cor." -> "1 corinthians", "Psalm" -> "psalms", "II Kings" -> "2 kings".
    Unknown names return None.
    """
    v = normalize_space(name)
    if v is None:
        return None
    v = re.sub(r"[^\w\s]", "", v.lower()).strip()
    v = re.sub(r"\s+", " ", v)
    tokens = v.split(" ")
    if len(tokens) > 1 and tokens[0] in _ORDINAL_PREFIXES:
        tokens[0] = _ORDINAL_PREFIXES[tokens[0]]
    v = " ".join(tokens)
    # "1cor" / "2kings" -> "1 cor" / "2 kings"
    v = re.sub(r"^([1-3])(?=[a-z])", r"\1 ", v)
    return _BOOK_ALIASES.get(v)


# ---------------------------------------------------------------------------
# Rule 4: normalize_reference  (scripture identity for matching/merge)
# ---------------------------------------------------------------------------

def normalize_reference(reference: str | None) -> str:
    """Reduce a scripture citation to its canonical comparable form.

    Steps:
      1. Trim; map typographic dashes to '-'.
      2. Drop characters other than letters, digits, whitespace, ':' and '-'.
      3. Collapse whitespace; remove whitespace around ':' and '-'.
      4. Lowercase.
      5. Replace the book-name token with its canonical name when it is a
         known book or abbreviation; unknown books are kept as-is.

    "1 cor. 13:4" and "1 Corinthians 13:4" both become "1 corinthians 13:4";
    "Psalm  23: 1" becomes "psalms 23:1".  None becomes "".
    """
    if reference is None:
        return ""
    v = _DASHES_RE.sub("-", str(reference)).strip()
    # Decompose unicode (e.g. accented chars) then drop combining marks
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = re.sub(r"[^0-9A-Za-z\s:\-]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    v = re.sub(r" ?([:\-]) ?", r"\1", v)
    v = v.lower()
    if not v:
        return ""

    # Roman/ordinal book prefixes ("ii kings 2:11", "first john 1:9")
    head, _, rest = v.partition(" ")
    if rest and head in _ORDINAL_PREFIXES:
        v = f"{_ORDINAL_PREFIXES[head]} {rest}"

    m = _REFERENCE_RE.match(v)
    if not m:
        return v
    book = m.group("book").strip()
    loc = m.group("loc")
    canonical = canonical_book(book) or book
    return f"{canonical} {loc}" if loc else canonical


# ---------------------------------------------------------------------------
# Rule 5: parse_grade  (free-text child grade -> numeric code)
#
# -1 = Pre-K, 0 = Kindergarten, 1..12 = grades.
# ---------------------------------------------------------------------------

_PRE_K = {"pre-k", "prek", "pre k", "pre-kinder", "pre-kindergarten", "prekindergarten", "pk"}
_KINDER = {"k", "kg", "kinder", "kindergarten", "kindergarden"}
_ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "eleventh": 11, "twelfth": 12,
}
_GRADE_NUM_RE = re.compile(r"^(?:grade )?(-?\d{1,2})(?:st|nd|rd|th)?(?: grade)?$")


def parse_grade(value: object) -> int | None:
    """Convert a grade value to a numeric code in [-1, 12], or None.

    Accepts ints and strings such as "3", "3rd", "3rd grade", "Grade 3",
    "third", "K", "Kindergarten", "Pre-K".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if -1 <= value <= 12 else None
    v = normalize_space(str(value))
    if v is None:
        return None
    t = v.lower().replace(".", "")
    t = re.sub(r"^grade\s*", "grade ", t)

    bare = t.removeprefix("grade ").removesuffix(" grade").strip()
    if bare in _PRE_K:
        return -1
    if bare in _KINDER:
        return 0
    if bare in _ORDINAL_WORDS:
        return _ORDINAL_WORDS[bare]

    m = _GRADE_NUM_RE.match(t)
    if m:
        code = int(m.group(1))
        return code if -1 <= code <= 12 else None
    return None


def grade_label(code: int | None) -> str:
    """Human-friendly label for a numeric grade code."""
    if code is None:
        return "Unknown"
    if code == -1:
        return "Pre-K"
    if code == 0:
        return "Kindergarten"
    if 1 <= code <= 12:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(code, "th")
        return f"{code}{suffix} Grade"
    return f"Grade {code}"


def grade_range_label(min_grade: int, max_grade: int) -> str:
    """'Grade 3' for single-grade ranges, 'Grades 1-3' otherwise."""
    if min_grade == max_grade:
        return f"Grade {min_grade}"
    return f"Grades {min_grade}-{max_grade}"
