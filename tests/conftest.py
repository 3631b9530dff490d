import pytest

from chatloom.services.context_window import ContextWindowSegmenter
from chatloom.services.prompt_builder import PromptBuilder

from fakes import BOT_ID, FakeBatchClient, FakeLLM, FakeRecordStore, FakeStorage


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def batch_client():
    return FakeBatchClient()


@pytest.fixture
def prompts():
    return PromptBuilder(BOT_ID)


@pytest.fixture
def segmenter():
    return ContextWindowSegmenter()
