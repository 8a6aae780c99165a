import hashlib
import json
import re

from .models import Question, QuestionKind

OUTPUT_CONTRACT = '{"answer": "<label(s)>", "confidence": <0-100>}'

PREAMBLE = """You are a {subject} expert.

Goal: Provide the most accurate answer based on deep technical reasoning.

INSTRUCTIONS:
1. Analyze the Question: Identify key constraints (e.g. "invalid", "not", "except").
2. Analyze Options: Evaluate each option's technical validity, one by one.
3. Chain of Thought: Explain your step-by-step reasoning before concluding.
4. Final Output: Only after the reasoning, return the answer as strictly valid JSON."""

_KIND_LINES = {
    QuestionKind.SINGLE: "Type: SINGLE CHOICE (exactly one correct answer)",
    QuestionKind.MULTI: "Type: CHECKBOX (select ALL correct answers)",
    QuestionKind.TRUE_FALSE: "Type: TRUE/FALSE",
}

IMAGE_NOTICE = "[IMAGE ATTACHED] An image is provided with this question. Analyze the image carefully."


def build_prompt(question: Question, subject: str = "certification exam") -> str:
    parts = [PREAMBLE.format(subject=subject), f"Question: {question.text}"]

    if question.options:
        lines = ["Options:"]
        lines.extend(f"{opt.label}. {opt.text}" for opt in question.options)
        parts.append("\n".join(lines))
    if question.options or question.kind != QuestionKind.SINGLE:
        parts.append(_KIND_LINES[question.kind])

    if question.image is not None:
        parts.append(IMAGE_NOTICE)

    answer_hint = "true or false" if question.kind == QuestionKind.TRUE_FALSE else "the option letter(s), comma-separated"
    parts.append(
        "Output Format:\n"
        'First, write your "Reasoning: ..." block.\n'
        f"Then, on a new line, write \"JSON:\" followed by exactly this object ({answer_hint} as answer):\n"
        f"{OUTPUT_CONTRACT}"
    )
    return "\n\n".join(parts) + "\n"


def normalize_text(text: str) -> str:
    text = re.sub(r"\s+", " ", text or "").strip()
    text = re.sub(r"[.。…]+$", "", text).strip()
    return text.casefold()


def question_cache_key(question: Question) -> str:
    """
    Cache key that is stable across formatting differences.

    Whitespace, trailing punctuation and letter case in the question and
    option texts do not change the key; a different image does.
    """
    key = normalize_text(question.text)
    if question.options:
        options = [[opt.label.strip().upper(), normalize_text(opt.text)] for opt in question.options]
        key += "_" + json.dumps(options, ensure_ascii=False, separators=(",", ":"))
    if question.kind != QuestionKind.SINGLE:
        key += f"_{question.kind.value}"
    if question.image is not None:
        key += "_img:" + hashlib.sha256(question.image).hexdigest()[:16]
    return key
