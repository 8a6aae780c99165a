"""
Answer extraction from free-text model output.

Model responses are unreliable, so extraction is a fixed cascade of named
strategies, most structured first:

1. structured_json   - the {"answer": ..., "confidence": ...} block the prompt asks for
2. boolean_literal   - the whole response is "true" or "false"
3. strict_letters    - the whole response is a short run of option letters
4. labeled_phrase    - "Answer: B" / "Jawaban: A, C" / "Option: D" inside reasoning
5. short_text_scan   - a very short response that still contains option letters

The first strategy that yields labels wins. Listing many letters is not a
failure here; the consensus engine decides how far to trust such answers.
"""

import json
import re
from typing import Callable, Iterable, NamedTuple, Optional, Sequence

from .models import ParsedAnswer, QuestionOption
from .prompts import normalize_text

DEFAULT_JSON_CONFIDENCE = 50
BOOLEAN_CONFIDENCE = 85
STRICT_LETTERS_CONFIDENCE = 70
LABELED_PHRASE_CONFIDENCE = 65
SHORT_TEXT_CONFIDENCE = 60

_FENCE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
_BOOLEAN = re.compile(r"^(true|false)$", re.IGNORECASE)
_STRICT_LETTERS = re.compile(r"^\s*[A-F](?:[\s,]+[A-F])*\s*$", re.IGNORECASE)
_LABELED_PHRASE = re.compile(
    r"(?:answer|jawaban|option)\s*:?\s*\**\s*([A-F](?:\s*,\s*[A-F])*)(?=[\s.,;)*]|$)",
    re.IGNORECASE,
)
_OPTION_LETTER = re.compile(r"[A-F]", re.IGNORECASE)
_TOKEN_SPLIT = re.compile(r"[\s,;/&]+")
_ANSWER_PUNCTUATION = " \t\n.,;:!?*()[]\"'"


class ExtractionMatch(NamedTuple):
    labels: tuple
    confidence: int
    strategy: str
    # Free-text answer from the JSON block, matched against option texts later
    answer_text: Optional[str] = None


def normalize_labels(answer) -> tuple:
    """
    Normalize an answer value to a sorted, deduplicated label tuple.

    "true"/"false" stay literal (lower-case), surrounding punctuation ignored;
    otherwise every single-letter token A-F (optionally followed by ".", ")"
    or ":") becomes an upper-case label. Other letters such as "I" are words.
    """
    if answer is None:
        return ()
    if isinstance(answer, bool):
        return ("true",) if answer else ("false",)
    if isinstance(answer, (list, tuple)):
        answer = ",".join(str(a) for a in answer)

    text = str(answer).strip().upper()
    bare = text.strip(_ANSWER_PUNCTUATION)
    if bare in ("TRUE", "FALSE"):
        return (bare.lower(),)

    labels = set()
    for token in _TOKEN_SPLIT.split(text):
        token = token.strip("().:*[]\"'")
        if _OPTION_LETTER.fullmatch(token):
            labels.add(token)
    return tuple(sorted(labels))


def answer_key(labels: Iterable[str]) -> str:
    return ", ".join(labels)


def _letters(text: str) -> tuple:
    return tuple(sorted({m.upper() for m in _OPTION_LETTER.findall(text)}))


def _clamp_confidence(value) -> int:
    if isinstance(value, bool) or value is None:
        return DEFAULT_JSON_CONFIDENCE
    if isinstance(value, (int, float)):
        number = int(value)
    else:
        match = re.match(r"\s*(-?\d+)", str(value))
        if not match:
            return DEFAULT_JSON_CONFIDENCE
        number = int(match.group(1))
    return max(0, min(100, number))


def _json_objects(text: str) -> list:
    """All JSON objects embedded in text, in order of appearance."""
    decoder = json.JSONDecoder()
    found = []
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except ValueError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            found.append(obj)
        idx = text.find("{", end)
    return found


def structured_json(text: str) -> Optional[ExtractionMatch]:
    cleaned = _FENCE.sub("\n", text).strip()
    candidates = []
    try:
        whole = json.loads(cleaned)
        if isinstance(whole, dict):
            candidates.append(whole)
    except ValueError:
        candidates = _json_objects(cleaned)

    # The prompt asks for the block last, so the final object wins
    for obj in reversed(candidates):
        if "answer" not in obj:
            continue
        answer = obj.get("answer")
        labels = normalize_labels(answer)
        answer_text = answer.strip() if isinstance(answer, str) and answer.strip() else None
        if labels or answer_text:
            return ExtractionMatch(
                labels, _clamp_confidence(obj.get("confidence")), "structured_json", answer_text
            )
    return None


def boolean_literal(text: str) -> Optional[ExtractionMatch]:
    if _BOOLEAN.match(text):
        return ExtractionMatch((text.lower(),), BOOLEAN_CONFIDENCE, "boolean_literal")
    return None


def strict_letters(text: str) -> Optional[ExtractionMatch]:
    if not _STRICT_LETTERS.match(text):
        return None
    if len(_OPTION_LETTER.findall(text)) > 6:
        return None
    return ExtractionMatch(_letters(text), STRICT_LETTERS_CONFIDENCE, "strict_letters")


def labeled_phrase(text: str) -> Optional[ExtractionMatch]:
    match = _LABELED_PHRASE.search(text)
    if not match:
        return None
    return ExtractionMatch(_letters(match.group(1)), LABELED_PHRASE_CONFIDENCE, "labeled_phrase")


def short_text_scan(text: str) -> Optional[ExtractionMatch]:
    if len(text) > 10:
        return None
    letters = _OPTION_LETTER.findall(text)
    if not letters or len(letters) > 4:
        return None
    return ExtractionMatch(_letters(text), SHORT_TEXT_CONFIDENCE, "short_text_scan")


STRATEGIES: Sequence[Callable[[str], Optional[ExtractionMatch]]] = (
    structured_json,
    boolean_literal,
    strict_letters,
    labeled_phrase,
    short_text_scan,
)


def match_answer(raw_text: Optional[str]) -> Optional[ExtractionMatch]:
    if not raw_text:
        return None
    text = raw_text.strip()
    if not text:
        return None
    for strategy in STRATEGIES:
        match = strategy(text)
        if match and (match.labels or match.answer_text):
            return match
    return None


def extract_answer(raw_text: Optional[str]) -> ParsedAnswer:
    """Turn a raw provider response into a ParsedAnswer (nothing extracted = unparseable)."""
    match = match_answer(raw_text)
    if match is None:
        return ParsedAnswer(labels=(), confidence=0)
    return ParsedAnswer(
        labels=match.labels,
        confidence=match.confidence,
        strategy=match.strategy,
        answer_text=match.answer_text,
    )


def map_to_option_labels(
    labels: tuple,
    options: Sequence[QuestionOption],
    answer_text: Optional[str] = None,
) -> tuple:
    """
    Reconcile labels with the question's options.

    A free-text answer equal to an option's text (ignoring case, spacing and
    trailing dots) becomes that option's label. On a two-option true/false
    question a single letter is turned into the literal it stands for, so
    "A" and "true" count as the same vote.
    """
    if not options:
        return labels

    true_false = len(options) == 2 and all(
        opt.text.strip().lower() in ("true", "false") for opt in options
    )

    if answer_text:
        wanted = normalize_text(answer_text)
        for opt in options:
            if wanted and normalize_text(opt.text) == wanted:
                return (opt.text.strip().lower(),) if true_false else (opt.label.strip().upper(),)

    if len(labels) != 1:
        return labels

    label = labels[0]
    if true_false and label not in ("true", "false"):
        for opt in options:
            if opt.label.strip().upper() == label:
                return (opt.text.strip().lower(),)
    return labels
