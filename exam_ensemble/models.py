from __future__ import annotations
import base64
import binascii
import logging
import re
from enum import Enum
from typing import Any, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorKind

logger = logging.getLogger(__name__)


class QuestionKind(str, Enum):
    SINGLE = "single"
    MULTI = "multi"
    TRUE_FALSE = "true_false"


# Values sent by the browser extension for the question type field
_KIND_ALIASES = {
    "radio": QuestionKind.SINGLE,
    "single": QuestionKind.SINGLE,
    "unknown": QuestionKind.SINGLE,
    "checkbox": QuestionKind.MULTI,
    "multi": QuestionKind.MULTI,
    "multi-select": QuestionKind.MULTI,
    "select": QuestionKind.TRUE_FALSE,
    "true_false": QuestionKind.TRUE_FALSE,
    "true-false": QuestionKind.TRUE_FALSE,
}

_DATA_URL_PREFIX = re.compile(r"^data:[\w/+.-]+;base64,")


class Method(str, Enum):
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    JUDGE = "judge"
    FALLBACK_CONFIDENCE = "fallback_confidence"
    SINGLE = "single"


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    text: str = ""


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = Field(min_length=1)
    options: Tuple[QuestionOption, ...] = ()
    kind: QuestionKind = QuestionKind.SINGLE
    image: Optional[bytes] = None
    number: Optional[int] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value: Any) -> Any:
        if isinstance(value, str) and value not in {k.value for k in QuestionKind}:
            kind = _KIND_ALIASES.get(value.strip().lower())
            if kind is None:
                logger.warning("Unrecognized question type %r, treating it as single choice", value)
                return QuestionKind.SINGLE
            return kind
        return value

    @classmethod
    def from_payload(cls, payload: Union[str, dict]) -> "Question":
        """
        Build a Question from the JSON shape posted by the client.

        Accepts either a bare question string or a dict with ``question``,
        ``options``, ``type``, ``number`` and ``image`` (base64, optionally
        as a ``data:`` URL).
        """
        if isinstance(payload, str):
            return cls(text=payload.strip())

        image = payload.get("image")
        if isinstance(image, str):
            image = decode_image(image)

        return cls(
            text=str(payload.get("question") or payload.get("text") or "").strip(),
            options=tuple(QuestionOption(**o) for o in payload.get("options") or []),
            kind=payload.get("type") or payload.get("kind") or QuestionKind.SINGLE,
            image=image,
            number=payload.get("number"),
        )


def decode_image(data: str) -> Optional[bytes]:
    cleaned = _DATA_URL_PREFIX.sub("", data.strip())
    if not cleaned:
        return None
    try:
        return base64.b64decode(cleaned, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Image is not valid base64: {e}") from e


class ParsedAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    labels: Tuple[str, ...] = ()
    confidence: int = Field(default=0, ge=0, le=100)
    strategy: Optional[str] = None
    answer_text: Optional[str] = None

    @property
    def answer(self) -> str:
        return ", ".join(self.labels)

    @property
    def is_empty(self) -> bool:
        return not self.labels and not self.answer_text


class ProviderResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    succeeded: bool
    raw_text: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    attempts: int = 0
    latency_ms: float = 0.0


class VoteEntry(BaseModel):
    answer: str
    count: int = 0
    total_confidence: int = 0
    supporting_providers: list[str] = Field(default_factory=list)

    @property
    def avg_confidence(self) -> int:
        if not self.count:
            return 0
        return round_half_up(self.total_confidence / self.count)


class ProviderAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    answer: str
    confidence: int
    unreliable: bool = False


class ResolutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    final_answer: str
    final_confidence: int
    method: Method
    elapsed_ms: int = 0
    votes: dict[str, dict] = Field(default_factory=dict)
    provider_answers: list[ProviderAnswer] = Field(default_factory=list)
    cached: bool = False


def round_half_up(value: float) -> int:
    return int(value + 0.5)
