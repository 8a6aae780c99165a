"""
Ensemble resolution: parallel workers, confidence-weighted voting and judge
escalation.

A round runs in two phases. All workers are asked concurrently and their
normalized answers are tallied; two or more workers agreeing on the exact
same answer settles it. Otherwise the judge (last provider in the roster) is
asked once, and if the judge fails too, a deterministic fallback picks among
the worker answers.
"""

from __future__ import annotations
import asyncio
import logging
import time
from typing import NamedTuple, Optional, Sequence

from .config import EnsembleConfig
from .errors import EnsembleExhausted
from .extraction import answer_key, extract_answer, map_to_option_labels
from .models import (
    Method, ParsedAnswer, ProviderAnswer, ProviderResult, QuestionOption,
    ResolutionResult, VoteEntry,
)

logger = logging.getLogger(__name__)


class WorkerVote(NamedTuple):
    provider_id: str
    labels: tuple
    confidence: int
    unreliable: bool

    @property
    def answer(self) -> str:
        return answer_key(self.labels)


def apply_reliability_penalty(
    provider_id: str,
    parsed: ParsedAnswer,
    threshold: int = 4,
    cap: int = 40,
) -> WorkerVote:
    """
    Cap the confidence of answers that list ``threshold`` or more letters.

    Such answers usually come from a model enumerating the options instead
    of committing to one.
    """
    letters = [label for label in parsed.labels if label not in ("true", "false")]
    if len(letters) >= threshold:
        return WorkerVote(provider_id, parsed.labels, min(parsed.confidence, cap), True)
    return WorkerVote(provider_id, parsed.labels, parsed.confidence, False)


def tally_votes(votes: Sequence[WorkerVote]) -> dict[str, VoteEntry]:
    tally: dict[str, VoteEntry] = {}
    for vote in votes:
        entry = tally.setdefault(vote.answer, VoteEntry(answer=vote.answer))
        entry.count += 1
        entry.total_confidence += vote.confidence
        entry.supporting_providers.append(vote.provider_id)
    return tally


def rank_votes(tally: dict[str, VoteEntry]) -> list[VoteEntry]:
    # sorted() is stable, so equal entries keep roster order
    return sorted(tally.values(), key=lambda e: (-e.count, -e.avg_confidence))


def _votes_summary(ranked: Sequence[VoteEntry]) -> dict[str, dict]:
    return {
        e.answer: {
            "count": e.count,
            "avg_confidence": e.avg_confidence,
            "providers": list(e.supporting_providers),
        }
        for e in ranked
    }


class ConsensusEngine:
    def __init__(self, client, config: Optional[EnsembleConfig] = None):
        self.client = client
        self.config = config or EnsembleConfig()

    def _vote_from(self, result: ProviderResult, options: Sequence[QuestionOption]) -> Optional[WorkerVote]:
        if not result.succeeded:
            return None
        parsed = extract_answer(result.raw_text)
        labels = map_to_option_labels(parsed.labels, options, parsed.answer_text)
        if not labels:
            return None
        if labels != parsed.labels:
            parsed = parsed.model_copy(update={"labels": labels})
        return apply_reliability_penalty(
            result.provider_id,
            parsed,
            self.config.unreliable_label_threshold,
            self.config.unreliable_confidence_cap,
        )

    def _designated(self, votes: Sequence[WorkerVote], provider_id: Optional[str]) -> Optional[WorkerVote]:
        if provider_id is None:
            return None
        for vote in votes:
            if vote.provider_id == provider_id and not vote.unreliable:
                return vote
        return None

    def choose_fallback(self, votes: Sequence[WorkerVote]) -> Optional[tuple[WorkerVote, Method]]:
        """
        Pick a worker answer when there is no majority and the judge failed.

        Precedence: configured primary, configured secondary, then the
        highest-confidence reliable answer. Penalized answers are only used
        when nothing else is left.
        """
        if not votes:
            return None

        primary = self._designated(votes, self.config.primary_provider)
        if primary:
            return primary, Method.PRIMARY
        secondary = self._designated(votes, self.config.secondary_provider)
        if secondary:
            return secondary, Method.SECONDARY

        reliable = [v for v in votes if not v.unreliable]
        pool = reliable or list(votes)
        # max() keeps the first of equal candidates, i.e. roster order
        best = max(pool, key=lambda v: v.confidence)
        return best, Method.FALLBACK_CONFIDENCE

    async def resolve(
        self,
        prompt: str,
        image: Optional[bytes] = None,
        roster: Optional[Sequence[str]] = None,
        options: Sequence[QuestionOption] = (),
    ) -> ResolutionResult:
        started = time.perf_counter()
        roster = list(roster) if roster is not None else list(self.config.roster)
        if not roster:
            raise ValueError("roster must contain at least one provider")
        workers = roster[:-1] if len(roster) > 1 else roster
        judge = roster[-1] if len(roster) > 1 else None

        logger.info("Running %d worker(s) in parallel: %s", len(workers), ", ".join(workers))
        results = await asyncio.gather(*[
            self.client.invoke(pid, prompt, image, self.config.max_attempts, stage="worker")
            for pid in workers
        ])

        votes = []
        for result in results:
            vote = self._vote_from(result, options)
            if vote is None:
                logger.info("   x %s: %s", result.provider_id, result.error_kind.value if result.error_kind else "no answer")
                continue
            votes.append(vote)
            logger.info(
                "   + %s: %s (%d%%)%s", vote.provider_id, vote.answer, vote.confidence,
                " [unreliable]" if vote.unreliable else "",
            )

        ranked = rank_votes(tally_votes(votes))
        provider_answers = [
            ProviderAnswer(provider_id=v.provider_id, answer=v.answer, confidence=v.confidence, unreliable=v.unreliable)
            for v in votes
        ]

        def finish(answer: str, confidence: int, method: Method) -> ResolutionResult:
            return ResolutionResult(
                final_answer=answer,
                final_confidence=confidence,
                method=method,
                elapsed_ms=int((time.perf_counter() - started) * 1000),
                votes=_votes_summary(ranked),
                provider_answers=provider_answers,
            )

        if judge is None:
            if votes:
                return finish(votes[0].answer, votes[0].confidence, Method.SINGLE)
            raise EnsembleExhausted({r.provider_id: r.error_kind for r in results})

        top = ranked[0] if ranked else None
        if top and top.count >= 2:
            method = Method.UNANIMOUS if top.count == len(workers) else Method.MAJORITY
            logger.info(
                "Majority: %d/%d workers agree on %s (%s)",
                top.count, len(workers), top.answer, ", ".join(top.supporting_providers),
            )
            return finish(top.answer, top.avg_confidence, method)

        logger.info("No majority. Calling judge %s", judge)
        judge_result = await self.client.invoke(judge, prompt, image, self.config.max_attempts, stage="judge")
        if judge_result.succeeded:
            parsed = extract_answer(judge_result.raw_text)
            labels = map_to_option_labels(parsed.labels, options, parsed.answer_text)
            if labels:
                logger.info("Judge decision: %s (%d%%)", answer_key(labels), parsed.confidence)
                return finish(answer_key(labels), parsed.confidence, Method.JUDGE)

        fallback = self.choose_fallback(votes)
        if fallback is None:
            errors = {r.provider_id: r.error_kind for r in results}
            errors[judge] = judge_result.error_kind
            raise EnsembleExhausted(errors)

        vote, method = fallback
        logger.info("Judge failed. Falling back to %s via %s", vote.provider_id, method.value)
        return finish(vote.answer, vote.confidence, method)

    async def failover(
        self,
        prompt: str,
        image: Optional[bytes] = None,
        roster: Optional[Sequence[str]] = None,
        options: Sequence[QuestionOption] = (),
    ) -> ResolutionResult:
        """
        Cheaper single-call mode: ask providers one at a time in roster order.

        The first answer at or above ``confidence_threshold`` is returned;
        below it the next provider is tried, and the most confident answer
        seen wins once the roster runs out.
        """
        started = time.perf_counter()
        roster = list(roster) if roster is not None else list(self.config.roster)
        best: Optional[WorkerVote] = None
        errors = {}

        for provider_id in roster:
            result = await self.client.invoke(provider_id, prompt, image, self.config.max_attempts, stage="failover")
            vote = self._vote_from(result, options)
            if vote is None:
                errors[provider_id] = result.error_kind
                logger.warning("%s: %s, trying next...", provider_id, result.error_kind.value if result.error_kind else "no answer")
                continue
            if best is None or vote.confidence > best.confidence:
                best = vote
            if vote.confidence >= self.config.confidence_threshold:
                break
            logger.info("%s answered %s below threshold (%d%%), trying next...", provider_id, vote.answer, vote.confidence)

        if best is None:
            raise EnsembleExhausted(errors)

        return ResolutionResult(
            final_answer=best.answer,
            final_confidence=best.confidence,
            method=Method.SINGLE,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
            provider_answers=[ProviderAnswer(
                provider_id=best.provider_id, answer=best.answer,
                confidence=best.confidence, unreliable=best.unreliable,
            )],
        )
