"""Tests for askcache/services/llm.py and askcache/services/embeddings.py"""
from unittest.mock import Mock, patch

import pytest
import requests

from askcache.config import Settings
from askcache.services.embeddings import (
    EmbeddingError,
    OllamaEmbedder,
    OpenAIEmbedder,
    build_embedder,
)
from askcache.services.llm import ChatCompletionClient, GenerationError


def _response(json_data=None, status_error=None):
    response = Mock()
    response.json.return_value = json_data
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


class TestChatCompletionClient:

    def test_plain_payload_uses_default_model_and_system_prompt(self):
        client = ChatCompletionClient(api_key="k", system_prompt="Be brief.")
        payload = client.build_payload("Capital of France?")

        assert payload["model"] == "gpt-4o-mini"
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["messages"][-1] == {"role": "user", "content": "Capital of France?"}
        assert "web_search_options" not in payload

    def test_retrieval_payload_uses_search_model(self):
        client = ChatCompletionClient(api_key="k", search_model="search-model")
        payload = client.build_payload("Weather today?", use_retrieval=True)

        assert payload["model"] == "search-model"
        assert payload["web_search_options"] == {}
        assert "temperature" not in payload

    def test_generate_returns_stripped_content(self):
        client = ChatCompletionClient(api_key="k", base_url="https://llm.example/v1/")
        data = {"choices": [{"message": {"content": "  Paris \n"}}]}

        with patch("askcache.services.llm.requests.post", return_value=_response(data)) as post:
            assert client.generate("Capital of France?") == "Paris"

        assert post.call_args[0][0] == "https://llm.example/v1/chat/completions"
        assert post.call_args[1]["headers"]["Authorization"] == "Bearer k"

    def test_missing_api_key(self):
        with pytest.raises(GenerationError, match="OPENAI_API_KEY"):
            ChatCompletionClient(api_key="").generate("q")

    def test_http_error_includes_body(self):
        error_response = Mock(text='{"error": "invalid key"}')
        http_error = requests.exceptions.HTTPError("401 Unauthorized", response=error_response)

        with patch("askcache.services.llm.requests.post", return_value=_response(status_error=http_error)):
            with pytest.raises(GenerationError, match="invalid key"):
                ChatCompletionClient(api_key="k").generate("q")

    def test_timeout(self):
        with patch("askcache.services.llm.requests.post", side_effect=requests.exceptions.Timeout()):
            with pytest.raises(GenerationError, match="timed out"):
                ChatCompletionClient(api_key="k").generate("q")

    def test_empty_content(self):
        data = {"choices": [{"message": {"content": "   "}}]}
        with patch("askcache.services.llm.requests.post", return_value=_response(data)):
            with pytest.raises(GenerationError, match="empty"):
                ChatCompletionClient(api_key="k").generate("q")

    def test_missing_choices(self):
        with patch("askcache.services.llm.requests.post", return_value=_response({"error": "x"})):
            with pytest.raises(GenerationError, match="Unexpected"):
                ChatCompletionClient(api_key="k").generate("q")

    @pytest.mark.parametrize("data", [
        {"choices": ["oops"]},
        {"choices": None},
        {"choices": [{"message": "oops"}]},
        {"choices": [{"message": {"content": 42}}]},
        ["not", "a", "dict"],
    ])
    def test_malformed_response_becomes_generation_error(self, data):
        with patch("askcache.services.llm.requests.post", return_value=_response(data)):
            with pytest.raises(GenerationError, match="Unexpected"):
                ChatCompletionClient(api_key="k").generate("q")

    @pytest.mark.asyncio
    async def test_async_answer_passes_retrieval_flag(self):
        data = {"choices": [{"message": {"content": "Sunny"}}]}
        client = ChatCompletionClient(api_key="k", search_model="search-model")

        with patch("askcache.services.llm.requests.post", return_value=_response(data)) as post:
            assert await client.answer("Weather today?", use_retrieval=True) == "Sunny"

        assert post.call_args[1]["json"]["model"] == "search-model"

    def test_from_settings(self):
        settings = Settings(OPENAI_API_KEY="k", OPENAI_MODEL="m", MAX_TOKENS=64)
        client = ChatCompletionClient.from_settings(settings)
        assert client.model == "m"
        assert client.max_tokens == 64
        assert client.system_prompt == settings.SYSTEM_PROMPT


class TestOllamaEmbedder:

    def test_embedding_field(self):
        embedder = OllamaEmbedder(url="http://ollama/api/embeddings", model="mxbai-embed-large", dimensions=2)
        with patch("askcache.services.embeddings.requests.post", return_value=_response({"embedding": [0.1, 0.2]})) as post:
            assert embedder.embed_sync("hello") == [0.1, 0.2]
        assert post.call_args[1]["json"] == {"model": "mxbai-embed-large", "prompt": "hello"}

    def test_data_list_format(self):
        embedder = OllamaEmbedder(url="u", model="m", dimensions=2)
        data = {"data": [{"embedding": [1, 2]}]}
        with patch("askcache.services.embeddings.requests.post", return_value=_response(data)):
            assert embedder.embed_sync("hello") == [1.0, 2.0]

    def test_unexpected_response(self):
        embedder = OllamaEmbedder(url="u", model="m", dimensions=2)
        with patch("askcache.services.embeddings.requests.post", return_value=_response({"foo": 1})):
            with pytest.raises(EmbeddingError):
                embedder.embed_sync("hello")

    @pytest.mark.parametrize("data", [
        [1, 2, 3],
        {"embedding": ["NaNx", "0.2"]},
        {"embedding": "0.1,0.2"},
        {"data": ["oops"]},
        {"data": [{"embedding": [None, 1]}]},
    ])
    def test_malformed_payload_becomes_embedding_error(self, data):
        embedder = OllamaEmbedder(url="u", model="m", dimensions=2)
        with patch("askcache.services.embeddings.requests.post", return_value=_response(data)):
            with pytest.raises(EmbeddingError):
                embedder.embed_sync("hello")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        embedder = OllamaEmbedder(url="u", model="m", dimensions=2)
        with patch(
            "askcache.services.embeddings.requests.post",
            side_effect=requests.exceptions.ConnectionError("refused"),
        ):
            with pytest.raises(EmbeddingError, match="refused"):
                await embedder.embed("hello")


class TestOpenAIEmbedder:

    def test_parses_data(self):
        embedder = OpenAIEmbedder(api_key="k", model="text-embedding-3-small", dimensions=2)
        data = {"data": [{"embedding": [0.3, 0.4]}]}
        with patch("askcache.services.embeddings.requests.post", return_value=_response(data)) as post:
            assert embedder.embed_sync("hello") == [0.3, 0.4]
        assert post.call_args[0][0] == "https://api.openai.com/v1/embeddings"
        assert post.call_args[1]["json"]["dimensions"] == 2

    @pytest.mark.parametrize("data", [
        "oops",
        {"data": None},
        {"data": [{"embedding": ["x", "y"]}]},
    ])
    def test_malformed_payload_becomes_embedding_error(self, data):
        embedder = OpenAIEmbedder(api_key="k", model="m", dimensions=2)
        with patch("askcache.services.embeddings.requests.post", return_value=_response(data)):
            with pytest.raises(EmbeddingError):
                embedder.embed_sync("hello")

    def test_missing_key(self):
        with pytest.raises(EmbeddingError):
            OpenAIEmbedder(api_key="", model="m", dimensions=2).embed_sync("hello")


class TestBuildEmbedder:

    def test_none_by_default(self):
        assert build_embedder(Settings()) is None

    def test_ollama(self):
        embedder = build_embedder(Settings(EMBED_PROVIDER="ollama", VECTOR_DIM=768))
        assert isinstance(embedder, OllamaEmbedder)
        assert embedder.dimensions == 768

    def test_openai(self):
        embedder = build_embedder(Settings(EMBED_PROVIDER="openai", OPENAI_API_KEY="k", VECTOR_DIM=1536))
        assert isinstance(embedder, OpenAIEmbedder)
        assert embedder.dimensions == 1536
