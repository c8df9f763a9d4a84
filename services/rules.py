"""
Fast-path rules for spotting song requests without calling the LLM.
"""

import re

# A bare "-" catches "artist - title" but also any hyphenated sentence.
REQUEST_WORDS = ("pon", "play", "song", "-")

MIN_SONG_LENGTH = 3

_CONTROL_WORDS = re.compile(r"\b(?:pon|ponme|play|song|canción)\b", re.IGNORECASE)
# Anything that is not a letter, digit, whitespace or hyphen (\w also admits "_")
_DISALLOWED_CHARS = re.compile(r"[^\w\s-]|_")
_WHITESPACE = re.compile(r"\s+")


def looks_like_request(text: str) -> bool:
    """Check if the text contains one of the request trigger words."""
    lowered = text.lower()
    return any(word in lowered for word in REQUEST_WORDS)


def normalize_song(text: str) -> str:
    """
    Reduce a request message to a song string.

    Removes control words, strips punctuation except hyphens,
    collapses whitespace and case-folds.

    Example:
        "Pon Bad Bunny - Tití Me Preguntó!!" -> "bad bunny - tití me preguntó"
    """
    song = text.casefold()
    song = _CONTROL_WORDS.sub("", song)
    song = _DISALLOWED_CHARS.sub("", song)
    song = _WHITESPACE.sub(" ", song)
    return song.strip()


def match_request(text: str) -> str:
    """
    Run the fast path on a message.

    Returns:
        The normalized song, or "" when the message is not a request
    """
    if not looks_like_request(text):
        return ""
    song = normalize_song(text)
    if len(song) > MIN_SONG_LENGTH:
        return song
    return ""
