"""
Content Generator Tests

The OpenAI client is replaced with a MagicMock whose
chat.completions.create is an AsyncMock.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from services.content_generator import ContentGenerationError, ContentGenerator, build_prompt


def mock_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        message = MagicMock()
        message.content = content
        choice = MagicMock()
        choice.message = message
        client.chat.completions.create = AsyncMock(return_value=MagicMock(choices=[choice]))
    return client


class TestPrompts:

    def test_required_fields(self):
        with pytest.raises(ValueError):
            build_prompt("seo_title", {})
        with pytest.raises(ValueError):
            build_prompt("meta_description", {"input": "x"})
        with pytest.raises(ValueError):
            build_prompt("blog_content", {"title": "x", "keywords": "python"})
        with pytest.raises(ValueError):
            build_prompt("content_gap_analysis", {"content": "## Intro"})

    def test_blog_prompt_uses_primary_keyword(self):
        prompt = build_prompt("blog_content", {
            "title": "Async Python",
            "keywords": ["asyncio", "event loop"],
            "recommended_sections": ["Basics", "Pitfalls"]
        })

        assert '"asyncio"' in prompt
        assert "event loop" in prompt
        assert "2. Pitfalls" in prompt

    def test_unknown_feature(self):
        with pytest.raises(KeyError):
            build_prompt("teleport", {})


class TestGenerate:

    @pytest.mark.asyncio
    async def test_parses_json_response(self):
        client = mock_client('{"meta_descriptions": ["a", "b"]}')
        generator = ContentGenerator(client=client, model="gpt-test")

        result = await generator.generate("meta_description", {"title": "Async Python"})

        assert result == {"meta_descriptions": ["a", "b"]}
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        generator = ContentGenerator(client=mock_client("not json"))

        with pytest.raises(ContentGenerationError):
            await generator.generate("seo_title", {"input": "python"})

    @pytest.mark.asyncio
    async def test_api_error(self):
        generator = ContentGenerator(client=mock_client(error=RuntimeError("rate limited")))

        with pytest.raises(ContentGenerationError):
            await generator.generate("seo_title", {"input": "python"})

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ContentGenerationError):
            await ContentGenerator().generate("seo_title", {"input": "python"})

    def test_model_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTENT_MODEL", "gpt-4o")
        assert ContentGenerator(client=mock_client("{}")).model == "gpt-4o"
