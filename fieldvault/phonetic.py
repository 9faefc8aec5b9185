"""
Phonetic folding for fuzzy search tokens.

Soundex maps similar-sounding words to the same 4-character code, so a keyed digest of
the code matches misspelled queries ("smyth" finds "smith") without exposing plaintext.
"""

import re
import unicodedata
from typing import List

# Soundex digit per letter A..Z; "0" letters are dropped after the first position
_SOUNDEX_DIGITS = "01230120022455012623010202"
_WORD_RE = re.compile(r"[a-z]+")


def strip_accents(text: str) -> str:
    """NFD-decompose and drop combining marks ("Nguyễn" -> "Nguyen")."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def soundex(word: str, length: int = 4) -> str:
    """First letter + consonant digits, padded with zeros. "" for non-alphabetic input."""
    word = strip_accents(word or "").upper()
    if not word or not word.isalpha() or not word.isascii():
        return ""
    code = word[0]
    last = _SOUNDEX_DIGITS[ord(word[0]) - ord("A")]
    for c in word[1:]:
        d = _SOUNDEX_DIGITS[ord(c) - ord("A")]
        if d != "0" and d != last:
            code += d
        # H and W do not separate equal codes
        if c not in "HW":
            last = d
    return (code + "0" * length)[:length]


def phonetic_fold(text: str) -> List[str]:
    """Soundex codes for each alphabetic word of text, in order, without duplicates."""
    words = _WORD_RE.findall(strip_accents(text).lower())
    codes = (soundex(w) for w in words)
    return list(dict.fromkeys(c for c in codes if c))
