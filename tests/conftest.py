import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from companion.domain.context.memory.conversation_memory import ConversationMemory
from companion.domain.orchestration.session import ConversationSession
from companion.infrastructure.llm.completion_client import CompletionClient
from companion.infrastructure.storage.kv_store import InMemoryKeyValueStore

COMPLETION_URL = "https://llm.test/openai/v1/chat/completions"
TEST_CREDENTIAL = "gsk_test_credential"


def completion_body(content: Optional[str]) -> Dict[str, Any]:
    if content is None:
        return {"choices": []}
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class FakeCompletionEndpoint:
    """Records requests and answers with queued responses"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[Callable[[httpx.Request], httpx.Response]] = []

    def reply_with(self, content: Optional[str]) -> "FakeCompletionEndpoint":
        self.responses.append(lambda request: httpx.Response(200, json=completion_body(content)))
        return self

    def fail_with(self, status: int) -> "FakeCompletionEndpoint":
        self.responses.append(lambda request: httpx.Response(status, json={"error": {"message": "nope"}}))
        return self

    def raise_transport_error(self) -> "FakeCompletionEndpoint":
        def _raise(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)
        self.responses.append(_raise)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json=completion_body("I am here."))
        return self.responses.pop(0)(request)

    def payload(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)

    def messages(self, index: int = -1) -> List[Dict[str, str]]:
        return self.payload(index)["messages"]

    def system_prompt(self, index: int = -1) -> str:
        return self.messages(index)[0]["content"]


class FakePage:
    """Page collaborator returning fixed text"""

    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def extract(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def endpoint() -> FakeCompletionEndpoint:
    return FakeCompletionEndpoint()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def memory(store) -> ConversationMemory:
    return ConversationMemory(store)


@pytest.fixture
def completion_client(endpoint) -> CompletionClient:
    return CompletionClient(
        url=COMPLETION_URL,
        model="llama-3.1-8b-instant",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler)),
    )


@pytest.fixture
def session(memory, completion_client) -> ConversationSession:
    return ConversationSession(memory=memory, completion_client=completion_client)


@pytest.fixture
def configured_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore({"credential": TEST_CREDENTIAL})


@pytest.fixture
def configured_session(configured_store, completion_client) -> ConversationSession:
    return ConversationSession(
        memory=ConversationMemory(configured_store),
        completion_client=completion_client,
    )
