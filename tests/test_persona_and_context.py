import asyncio

import pytest

from companion.domain.context.context_gate import ContextGate
from companion.domain.context.persona import PersonaDeriver
from companion.domain.errors import ContextAcquisitionFailed
from companion.domain.models.conversation import PersonaTone

from .conftest import FakePage


class TestPersonaDeriver:
    @pytest.mark.parametrize("facts, expected", [
        ("User is my friend.; age is 5", PersonaTone.CHILD),
        ("age is 12", PersonaTone.CHILD),
        ("age is 13", PersonaTone.GENTLE),
        ("age is 60", PersonaTone.GENTLE),
        ("Likes tea; Age Is 70", PersonaTone.ELDER),
        ("User is my friend.", PersonaTone.GENTLE),
        ("", PersonaTone.GENTLE),
    ])
    def test_tone_from_age_marker(self, facts, expected):
        assert PersonaDeriver().derive(facts) == expected

    def test_first_age_marker_wins(self):
        assert PersonaDeriver().derive("age is 8; age is 80") == PersonaTone.CHILD

    def test_directives(self):
        assert PersonaTone.GENTLE.directive == "gentle"
        assert "child" in PersonaTone.CHILD.directive
        assert "patient" in PersonaTone.ELDER.directive


class TestContextGate:
    @pytest.mark.parametrize("utterance", [
        "What is on my SCREEN?",
        "can you summarize this article",
        "Read it to me",
        "analyze the website",
    ])
    def test_trigger_words_request_context(self, utterance):
        assert ContextGate().wants_context(utterance)

    def test_plain_utterance_is_idempotently_ignored(self):
        gate = ContextGate()
        assert gate.wants_context("hi") is False
        assert gate.wants_context("hi") is False

    async def test_no_trigger_never_calls_provider(self):
        page = FakePage("some page text")
        gate = ContextGate()

        assert await gate.acquire("hi", page) == ""
        assert await gate.acquire("hi", page) == ""
        assert page.calls == 0

    async def test_snippet_truncated_to_limit(self):
        gate = ContextGate()
        snippet = await gate.acquire("read this", FakePage("x" * 5000))
        assert len(snippet) == 3500

    async def test_short_snippet_kept_whole(self):
        snippet = await ContextGate().acquire("read this", FakePage("short page"))
        assert snippet == "short page"

    @pytest.mark.parametrize("error", [
        ContextAcquisitionFailed("chrome pages are not allowed"),
        RuntimeError("script injection failed"),
    ])
    async def test_extraction_failure_degrades_to_empty(self, error):
        page = FakePage(error=error)
        assert await ContextGate().acquire("look at the page", page) == ""
        assert page.calls == 1

    async def test_slow_extraction_times_out(self):
        class SlowPage:
            async def extract(self):
                await asyncio.sleep(5)
                return "too late"

        gate = ContextGate(fetch_timeout=0.01)
        assert await gate.acquire("read the page", SlowPage()) == ""

    async def test_missing_provider(self):
        assert await ContextGate().acquire("read the page", None) == ""

    def test_custom_vocabulary(self):
        gate = ContextGate(triggers=["Lesen"])
        assert gate.wants_context("bitte lesen")
        assert not gate.wants_context("read this page")
