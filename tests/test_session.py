import asyncio
import copy

import httpx
import pytest

from companion.domain.context.memory.conversation_memory import ConversationMemory
from companion.domain.errors import InvalidCredentialError, TurnInProgressError
from companion.domain.models.conversation import Emotion, TurnOutcome
from companion.domain.orchestration.session import (
    CREDENTIAL_SAVED_MESSAGE, MEMORY_CLEARED_MESSAGE, NO_CREDENTIAL_MESSAGE, ConversationSession
)
from companion.domain.recovery.recovery_policy import CONNECTIVITY_MESSAGE, RESET_MESSAGE
from companion.infrastructure.llm.completion_client import CompletionClient
from companion.infrastructure.storage.kv_store import InMemoryKeyValueStore

from .conftest import COMPLETION_URL, TEST_CREDENTIAL, FakePage

LOREM = ("lorem ipsum dolor sit amet consectetur adipiscing elit " * 100)[:4000]


def seeded_history(n: int):
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"earlier {i}"}
        for i in range(n)
    ]


class TestTurns:
    async def test_greeting_end_to_end(self, configured_session, configured_store, endpoint):
        endpoint.reply_with("Hello. I am Baymax, your personal companion. How are you feeling?")

        result = await configured_session.process_utterance("hi")

        assert len(endpoint.requests) == 1
        system_prompt = endpoint.system_prompt()
        assert "Tone: be gentle." in system_prompt
        assert '"""\nN/A\n"""' in system_prompt
        assert "Memory: User is my friend." in system_prompt
        assert endpoint.messages()[-1] == {"role": "user", "content": "hi"}

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.text.startswith("Hello. I am Baymax")
        assert result.speakable.endswith("How are you feeling.")
        assert len(configured_store.data["conversationHistory"]) == 2

    async def test_summarize_uses_first_3500_characters(self, configured_session, endpoint):
        endpoint.reply_with("It is about lorem ipsum. Would you like more?")
        page = FakePage(LOREM)

        await configured_session.process_utterance("can you summarize this article", page=page)

        assert page.calls == 1
        context_block = endpoint.system_prompt().split('"""')[1]
        assert context_block == "\n" + LOREM[:3500] + "\n"

    async def test_page_is_not_read_without_trigger(self, configured_session, endpoint):
        page = FakePage(LOREM)

        await configured_session.process_utterance("hi", page=page)

        assert page.calls == 0
        assert '"""\nN/A\n"""' in endpoint.system_prompt()

    async def test_failed_page_extraction_is_silent(self, configured_session, endpoint):
        endpoint.reply_with("I cannot see it. What would you like to know?")

        result = await configured_session.process_utterance(
            "read this page", page=FakePage(error=RuntimeError("blocked"))
        )

        assert result.outcome == TurnOutcome.COMPLETED
        assert '"""\nN/A\n"""' in endpoint.system_prompt()

    async def test_age_fact_selects_child_tone(self, completion_client, endpoint):
        store = InMemoryKeyValueStore({"credential": TEST_CREDENTIAL, "userFacts": "User is my friend.; age is 5"})
        session = ConversationSession(ConversationMemory(store), completion_client)

        await session.process_utterance("hi")

        assert "like explaining to a child" in endpoint.system_prompt()

    async def test_memory_directive_updates_facts(self, configured_session, configured_store, endpoint):
        endpoint.reply_with("I will remember that. [MEMORY: likes tea] Shall I make some?")

        result = await configured_session.process_utterance("I really like tea")

        assert "likes tea" in configured_store.data["userFacts"]
        assert "[MEMORY:" not in result.text
        assert "[MEMORY:" not in configured_store.data["conversationHistory"][-1]["content"]
        assert result.emotion == Emotion.NEUTRAL

        endpoint.reply_with("Of course.")
        await configured_session.process_utterance("hello again")
        assert "Memory: User is my friend.; likes tea" in endpoint.system_prompt()

    async def test_reply_without_directive_keeps_facts(self, completion_client, endpoint):
        store = InMemoryKeyValueStore({"credential": TEST_CREDENTIAL, "userFacts": "age is 70"})
        session = ConversationSession(ConversationMemory(store), completion_client)
        endpoint.reply_with("I am happy to see you. How is your back?")

        result = await session.process_utterance("hello")

        assert store.data["userFacts"] == "age is 70"
        assert result.emotion == Emotion.HAPPY

    async def test_history_never_exceeds_window(self, configured_session, configured_store, endpoint):
        for i in range(5):
            endpoint.reply_with(f"answer {i}")
            await configured_session.process_utterance(f"question {i}")
            assert len(configured_store.data["conversationHistory"]) <= 6

        assert configured_store.data["conversationHistory"] == [
            {"role": "user", "content": "question 2"},
            {"role": "assistant", "content": "answer 2"},
            {"role": "user", "content": "question 3"},
            {"role": "assistant", "content": "answer 3"},
            {"role": "user", "content": "question 4"},
            {"role": "assistant", "content": "answer 4"},
        ]
        # system + 6 history + new user turn on the last request
        assert len(endpoint.messages()) == 8

    async def test_blank_history_turns_are_not_sent(self, completion_client, endpoint):
        store = InMemoryKeyValueStore({
            "credential": TEST_CREDENTIAL,
            "conversationHistory": [
                {"role": "user", "content": "hello"},
                {"role": "assistant", "content": ""},
            ],
        })
        session = ConversationSession(ConversationMemory(store), completion_client)

        await session.process_utterance("are you there")

        assert all(m["content"].strip() for m in endpoint.messages())
        assert len(endpoint.messages()) == 3


class TestFailures:
    async def test_missing_credential_short_circuits(self, session, store, endpoint):
        result = await session.process_utterance("hi")

        assert result.text == NO_CREDENTIAL_MESSAGE
        assert result.outcome == TurnOutcome.UNCONFIGURED
        assert endpoint.requests == []
        assert store.data == {}

    async def test_bad_request_resets_history(self, completion_client, endpoint):
        store = InMemoryKeyValueStore({
            "credential": TEST_CREDENTIAL,
            "userFacts": "likes tea",
            "conversationHistory": seeded_history(6),
        })
        session = ConversationSession(ConversationMemory(store), completion_client)
        endpoint.fail_with(400)

        result = await session.process_utterance("hi")

        assert result.text == RESET_MESSAGE
        assert result.outcome == TurnOutcome.RESET
        assert await ConversationMemory(store).get_history() == []
        assert store.data["userFacts"] == "likes tea"

    @pytest.mark.parametrize("status", [401, 404, 429, 500])
    async def test_other_statuses_leave_history_unchanged(self, completion_client, endpoint, status):
        store = InMemoryKeyValueStore({
            "credential": TEST_CREDENTIAL,
            "conversationHistory": seeded_history(4),
        })
        before = copy.deepcopy(store.data)
        session = ConversationSession(ConversationMemory(store), completion_client)
        endpoint.fail_with(status)

        result = await session.process_utterance("hi")

        assert result.text == CONNECTIVITY_MESSAGE
        assert result.outcome == TurnOutcome.RECOVERED
        assert store.data == before
        assert len(endpoint.requests) == 1

    async def test_transport_error_apologizes(self, configured_session, configured_store, endpoint):
        endpoint.raise_transport_error()

        result = await configured_session.process_utterance("hi")

        assert result.text == CONNECTIVITY_MESSAGE
        assert "conversationHistory" not in configured_store.data

    async def test_unexpected_failure_is_spoken(self, configured_session, configured_store, endpoint):
        class BrokenStore(InMemoryKeyValueStore):
            async def get(self, keys):
                keys = list(keys)
                if "userFacts" in keys:
                    raise OSError("disk unavailable")
                return await super().get(keys)

        store = BrokenStore({"credential": TEST_CREDENTIAL})
        session = ConversationSession(
            ConversationMemory(store), configured_session.completion_client
        )

        result = await session.process_utterance("hi")

        assert result.text == CONNECTIVITY_MESSAGE
        assert endpoint.requests == []
        state = await session.state_manager.get_current_state()
        assert state["in_flight"] is False

    async def test_failed_history_write_keeps_new_fact_out(self, configured_session, endpoint):
        class HistoryWriteFails(InMemoryKeyValueStore):
            async def set(self, items):
                if "conversationHistory" in items:
                    raise OSError("disk full")
                await super().set(items)

        store = HistoryWriteFails({"credential": TEST_CREDENTIAL, "userFacts": "base"})
        session = ConversationSession(
            ConversationMemory(store), configured_session.completion_client
        )
        endpoint.reply_with("Noted. [MEMORY: likes tea]")

        result = await session.process_utterance("I like tea")

        assert result.text == CONNECTIVITY_MESSAGE
        assert result.outcome == TurnOutcome.RECOVERED
        assert store.data == {"credential": TEST_CREDENTIAL, "userFacts": "base"}

    async def test_blank_utterance_rejected(self, configured_session):
        with pytest.raises(ValueError):
            await configured_session.process_utterance("   ")

    async def test_overlapping_turn_is_rejected(self, configured_store):
        release = asyncio.Event()

        async def slow_handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={"choices": [{"message": {"content": "Done."}}]})

        client = CompletionClient(
            url=COMPLETION_URL,
            model="m",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)),
        )
        session = ConversationSession(ConversationMemory(configured_store), client)

        first = asyncio.create_task(session.process_utterance("first"))
        for _ in range(100):
            if session.state_manager.state["in_flight"]:
                break
            await asyncio.sleep(0)

        with pytest.raises(TurnInProgressError):
            await session.process_utterance("second")

        release.set()
        result = await first
        assert result.text == "Done."
        assert len(configured_store.data["conversationHistory"]) == 2


class TestSessionCommands:
    async def test_register_credential(self, session, store):
        assert await session.register_credential("  gsk_live_key ") == CREDENTIAL_SAVED_MESSAGE
        assert store.data["credential"] == "gsk_live_key"

    @pytest.mark.parametrize("key", ["", "sk-openai", "   "])
    async def test_invalid_credential_rejected(self, session, store, key):
        with pytest.raises(InvalidCredentialError):
            await session.register_credential(key)
        assert "credential" not in store.data

    async def test_reset_memory_keeps_facts(self, completion_client):
        store = InMemoryKeyValueStore({
            "credential": TEST_CREDENTIAL,
            "userFacts": "likes tea",
            "conversationHistory": seeded_history(6),
        })
        session = ConversationSession(ConversationMemory(store), completion_client)

        assert await session.reset_memory() == MEMORY_CLEARED_MESSAGE
        assert store.data == {"credential": TEST_CREDENTIAL, "userFacts": "likes tea"}
