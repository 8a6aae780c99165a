"""
Exam Ensemble - multi-provider answering of multiple-choice exam questions.

A question is rendered into one prompt and sent to several LLM providers:
1. Workers: answer in parallel; two or more agreeing settles the question
2. Judge: asked only when the workers disagree
3. Fallback: a deterministic pick among worker answers if the judge fails

Key features:
- Layered answer extraction from free-text model output
- Confidence-weighted voting with a penalty for "list every option" answers
- Per-call retry with backoff and a stable error classification
- Short-lived in-memory cache for repeated questions
"""

from .cache import AnswerCache, CacheEntry
from .config import EnsembleConfig, load_config
from .consensus import ConsensusEngine
from .errors import EnsembleExhausted, ErrorKind, classify_error
from .extraction import extract_answer, match_answer
from .models import (
    Method,
    ParsedAnswer,
    ProviderResult,
    Question,
    QuestionKind,
    QuestionOption,
    ResolutionResult,
)
from .prompts import build_prompt, question_cache_key
from .providers import ProviderClient
from .solver import QuestionSolver

__all__ = [
    # Config
    "EnsembleConfig",
    "load_config",
    # Data model
    "Question",
    "QuestionOption",
    "QuestionKind",
    "ParsedAnswer",
    "ProviderResult",
    "ResolutionResult",
    "Method",
    # Components
    "build_prompt",
    "question_cache_key",
    "extract_answer",
    "match_answer",
    "ProviderClient",
    "ConsensusEngine",
    "AnswerCache",
    "CacheEntry",
    "QuestionSolver",
    # Errors
    "ErrorKind",
    "EnsembleExhausted",
    "classify_error",
]
