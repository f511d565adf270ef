"""Unit tests for base LLM service functionality.

This module tests the core LLM service interface, including:
- Prompt lookup and formatting
- Per-call template overrides
- System prompt selection
"""
# type: ignore
import unittest
from unittest.mock import AsyncMock, patch

from pydantic import BaseModel

from souvenir._llm._base import BaseLLMService, format_and_send_prompt

# Mock prompts for testing
PROMPTS = {
    "example_prompt": "Hello, {name}!",
    "chat_system": "You are talking to {name}.",
    "chat_prompt": "Say hi to {name}.",
}


class TestModel(BaseModel):
    """Test Pydantic model for response validation."""
    answer: str


class TestFormatAndSendPrompt(unittest.IsolatedAsyncioTestCase):
    """Test suite for format_and_send_prompt utility function."""

    def setUp(self):
        self.mock_llm = AsyncMock(spec=BaseLLMService(model=""))
        self.mock_response = (TestModel(answer="TEST"), [{"key": "value"}])
        self.mock_llm.send_message = AsyncMock(return_value=self.mock_response)

    @patch("souvenir._llm._base.PROMPTS", PROMPTS)
    async def test_format_and_send_prompt(self):
        """The template is formatted and sent with the response model."""
        result = await format_and_send_prompt(
            prompt_key="example_prompt",
            llm=self.mock_llm,
            format_kwargs={"name": "World"},
            response_model=TestModel,
        )

        self.mock_llm.send_message.assert_called_once_with(prompt="Hello, World!", response_model=TestModel)
        self.assertEqual(result, self.mock_response)

    @patch("souvenir._llm._base.PROMPTS", PROMPTS)
    async def test_format_and_send_prompt_with_additional_args(self):
        """Extra kwargs are passed through to send_message."""
        await format_and_send_prompt(
            prompt_key="example_prompt",
            llm=self.mock_llm,
            format_kwargs={"name": "World"},
            response_model=TestModel,
            model="test_model",
            max_tokens=100,
        )

        self.mock_llm.send_message.assert_called_once_with(
            prompt="Hello, World!", response_model=TestModel, model="test_model", max_tokens=100
        )

    @patch("souvenir._llm._base.PROMPTS", PROMPTS)
    async def test_system_prompt(self):
        """A '<key>_system' template is sent as the system prompt with '<key>_prompt' as the message."""
        await format_and_send_prompt(
            prompt_key="chat", llm=self.mock_llm, format_kwargs={"name": "Ana"}, response_model=TestModel
        )

        self.mock_llm.send_message.assert_called_once_with(
            system_prompt="You are talking to Ana.", prompt="Say hi to Ana.", response_model=TestModel
        )

    @patch("souvenir._llm._base.PROMPTS", PROMPTS)
    async def test_template_override(self):
        """Templates given for the call take precedence over PROMPTS."""
        await format_and_send_prompt(
            prompt_key="example_prompt",
            llm=self.mock_llm,
            format_kwargs={"name": "World"},
            response_model=TestModel,
            templates={"example_prompt": "Bye, {name}."},
        )

        self.mock_llm.send_message.assert_called_once_with(prompt="Bye, World.", response_model=TestModel)


class TestBaseLLMService(unittest.TestCase):
    def test_count_tokens(self):
        self.assertEqual(BaseLLMService(model="").count_tokens("Alice met Bob."), 4)


if __name__ == "__main__":
    unittest.main()
