"""Shared fixtures and fakes for exam_ensemble tests."""

import asyncio
import json

import pytest

from exam_ensemble.config import EnsembleConfig
from exam_ensemble.errors import ErrorKind
from exam_ensemble.models import ProviderResult


def answer_text(answer, confidence=None, reasoning="Reasoning: checked every option."):
    """Raw model output in the format the prompt asks for."""
    block = {"answer": answer}
    if confidence is not None:
        block["confidence"] = confidence
    return f"{reasoning}\n\nJSON: {json.dumps(block)}"


def ok(provider_id, answer, confidence=None):
    return ProviderResult(
        provider_id=provider_id,
        succeeded=True,
        raw_text=answer_text(answer, confidence),
        attempts=1,
    )


def fail(provider_id, kind=ErrorKind.OVERLOAD):
    return ProviderResult(
        provider_id=provider_id,
        succeeded=False,
        error_kind=kind,
        error_detail=kind.value,
        attempts=3,
    )


class FakeClient:
    """
    Stand-in for ProviderClient with a scripted result per provider id.

    Script values are ProviderResult objects, or (answer, confidence) tuples
    turned into successful results.
    """

    def __init__(self, script=None, delay=0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, provider_id, prompt, image=None, max_attempts=3, stage="worker"):
        self.calls.append((provider_id, stage))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        outcome = self.script.get(provider_id)
        if outcome is None:
            return fail(provider_id, ErrorKind.NOT_FOUND)
        if isinstance(outcome, ProviderResult):
            return outcome
        answer, confidence = outcome
        return ok(provider_id, answer, confidence)

    @property
    def providers_called(self):
        return [pid for pid, _ in self.calls]


ROSTER = ["w1", "w2", "w3", "judge"]


@pytest.fixture
def config():
    return EnsembleConfig(roster=list(ROSTER))


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
