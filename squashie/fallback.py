"""
Offline Mediation Fallbacks
===========================

Deterministic text transforms used whenever the LLM is disabled or failing.
Same input, same output; no network, no randomness.
"""

import re
from typing import Dict, Optional

MAX_EXCERPT_CHARS = 160
MAX_RULING_SUMMARY_CHARS = 140

MOOD_OPENERS: Dict[str, str] = {
    "rage": "I'm really upset and I want to talk about this.",
    "annoyed": "Something has been bothering me and I'd like to sort it out.",
    "meh": "There's something I'd like us to talk about.",
    "chill": "I'd like to bring something up, no pressure.",
    "zen": "I've been reflecting on something and wanted to share it.",
    "responsive": "Thanks for raising this. Here is how I see it.",
}

PROFANITY = (
    "fuck", "fucking", "shit", "bitch", "asshole", "bastard", "damn", "crap", "idiot", "stupid",
)

# (pattern, replacement) applied in order, case-insensitive
_SOFTENERS = (
    (r"\byou always\b", "it feels like you often"),
    (r"\byou never\b", "it feels like you rarely"),
    (r"\bshut up\b", "please hear me out"),
    (r"\bi hate\b", "I really struggle with"),
    (r"\bwhatever\b", "okay"),
)

_PROFANITY_RE = re.compile(r"\b(" + "|".join(PROFANITY) + r")\b", re.IGNORECASE)
_SHOUTED_WORD_RE = re.compile(r"\b[A-Z]{3,}\b")
_REPEATED_PUNCT_RE = re.compile(r"([!?])[!?]+")
_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s")


def _clean(text: Optional[str]) -> str:
    return _WHITESPACE_RE.sub(" ", (text or "")).strip()


def excerpt(text: Optional[str], max_chars: int = MAX_EXCERPT_CHARS) -> str:
    """First `max_chars` characters, cut on a word boundary."""
    text = _clean(text)
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars].rsplit(" ", 1)[0]
    return cut.rstrip(",;:") + "..."


def soften_message(raw: str, mood: Optional[str] = None) -> str:
    """Turn a raw grievance into a calmer first-person message."""
    text = _clean(raw)
    if not text:
        return MOOD_OPENERS.get(mood or "meh", MOOD_OPENERS["meh"])

    text = _SHOUTED_WORD_RE.sub(lambda m: m.group(0).lower(), text)
    text = _REPEATED_PUNCT_RE.sub(r"\1", text)
    for pattern, replacement in _SOFTENERS:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    text = _PROFANITY_RE.sub(lambda m: m.group(0)[0] + "*" * (len(m.group(0)) - 1), text)
    text = text[0].upper() + text[1:]
    if text[-1] not in ".!?":
        text += "."

    opener = MOOD_OPENERS.get(mood or "meh", MOOD_OPENERS["meh"])
    return f"{opener} {text}"


def fallback_mediation(text1: str, text2: str) -> Dict[str, str]:
    return {
        "summary": (
            f"One of you is saying: \"{excerpt(text1)}\" "
            f"The other is saying: \"{excerpt(text2)}\" "
            "You both clearly care about this, you're just starting from different places."
        ),
        "suggestion": (
            "Take turns describing how this felt, starting with \"I felt...\" instead of "
            "\"you always\" or \"you never\". Then each of you name one thing the other "
            "could do differently next time."
        ),
    }


def fallback_rehash(text1: str, text2: str, prior_summary: str, prior_suggestion: str) -> Dict[str, str]:
    return {
        "summary": (
            "The first attempt didn't land for at least one of you. "
            f"Looking again: the first perspective centers on \"{excerpt(text1, 100)}\" "
            f"while the second centers on \"{excerpt(text2, 100)}\". "
            "The sticking point is probably less about the facts and more about feeling heard."
        ),
        "suggestion": (
            "Before proposing any fix, each of you restate the other's side in your own "
            "words until they agree you got it right. Only then pick one small, concrete "
            "change to try this week."
        ),
    }


def fallback_core_reflection(issue1: str, issue2: str) -> Dict[str, str]:
    return {
        "reflection": (
            f"Underneath it all, one of you needs: \"{excerpt(issue1, 120)}\" "
            f"and the other needs: \"{excerpt(issue2, 120)}\". "
            "These needs aren't opposites; they're two sides asking to be taken seriously."
        ),
        "suggestion": (
            "Agree on one way each of you will show the other that this core need matters, "
            "and check in on it in a few days."
        ),
    }


def fallback_final_ruling(text1: str, text2: str) -> str:
    return (
        "After three rounds, here is the ruling. "
        f"Person 1 said: \"{excerpt(text1, 100)}\" Person 2 said: \"{excerpt(text2, 100)}\" "
        "Both of you have a point and both of you dug in. The ruling: call it a draw, "
        "each of you owes the other one genuine acknowledgment, and the topic is closed "
        "for a week."
    )


def fallback_ruling_summary(ruling: str) -> str:
    """First sentence of the ruling, capped for the public feed."""
    text = _clean(ruling)
    if not text:
        return "The AI has ruled."
    first = _SENTENCE_END_RE.split(text, maxsplit=1)[0]
    return excerpt(first, MAX_RULING_SUMMARY_CHARS)
