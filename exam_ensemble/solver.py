from __future__ import annotations
import asyncio
import logging
import time
from typing import Callable, Optional, Sequence, Union

from .cache import AnswerCache
from .config import EnsembleConfig
from .consensus import ConsensusEngine
from .errors import EnsembleExhausted
from .models import Method, Question, ResolutionResult
from .prompts import build_prompt, question_cache_key
from .providers import ProviderClient

logger = logging.getLogger(__name__)


class QuestionSolver:
    """
    Request handler for one question at a time: cache lookup, prompt
    rendering, ensemble resolution and cache write-back.
    """

    def __init__(
        self,
        config: Optional[EnsembleConfig] = None,
        client: Optional[ProviderClient] = None,
        cache: Optional[AnswerCache] = None,
        run_id: Optional[str] = None,
        on_attempt: Optional[Callable[[dict], None]] = None,
    ):
        self.config = config or EnsembleConfig()
        self.run_id = run_id
        self._on_attempt = on_attempt
        if client is None:
            client = ProviderClient.from_config(self.config, on_attempt=self._record_attempt)
        self.client = client
        self.cache = cache if cache is not None else AnswerCache(self.config.cache_ttl_s)
        self.engine = ConsensusEngine(self.client, self.config)
        self.requests = 0

    def _record_attempt(self, record: dict) -> None:
        if self._on_attempt:
            self._on_attempt({"run_id": self.run_id, **record})

    async def solve(self, question: Union[Question, str, dict]) -> ResolutionResult:
        if not isinstance(question, Question):
            question = Question.from_payload(question)
        self.requests += 1

        key = question_cache_key(question)
        self.cache.evict_expired()
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache hit for %r: %s", question.text[:55], cached.answer)
            return ResolutionResult(
                final_answer=cached.answer,
                final_confidence=cached.confidence or 0,
                method=cached.method or Method.SINGLE,
                elapsed_ms=0,
                cached=True,
            )

        started = time.perf_counter()
        prompt = build_prompt(question, self.config.subject)
        try:
            if self.config.mode == "failover":
                result = await self.engine.failover(prompt, question.image, options=question.options)
            else:
                result = await self.engine.resolve(prompt, question.image, options=question.options)
        except EnsembleExhausted as e:
            logger.error("[#%d] %s", self.requests, e)
            raise

        self.cache.put(key, result.final_answer, result.final_confidence, result.method)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        number = f"{question.number}. " if question.number else ""
        logger.info(
            "Question: %s%s | answer: %s [%d%%] | method: %s | %dms",
            number, question.text[:55], result.final_answer, result.final_confidence,
            result.method.value, elapsed_ms,
        )
        return result.model_copy(update={"elapsed_ms": elapsed_ms})

    async def solve_many(
        self, questions: Sequence[Union[Question, str, dict]]
    ) -> list[Union[ResolutionResult, EnsembleExhausted]]:
        """Resolve several questions concurrently; failures are returned in place."""
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def _one(q):
            async with semaphore:
                try:
                    return await self.solve(q)
                except EnsembleExhausted as e:
                    return e

        return await asyncio.gather(*[_one(q) for q in questions])
