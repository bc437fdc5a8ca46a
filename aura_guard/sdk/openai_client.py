"""
OpenAI text generator.

Implements the generator interface the reply pipeline calls.
"""

from typing import Dict, List, Optional

from openai import AsyncOpenAI

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIGenerator:
    """Chat-completions backed text generator.

    Errors from the OpenAI client propagate unchanged; the reply pipeline
    maps them onto in-persona replies.
    """

    def __init__(self, model: str = DEFAULT_MODEL, client: Optional[AsyncOpenAI] = None, api_key: Optional[str] = None):
        """Initialize the generator.

        Args:
            model: OpenAI model name
            client: Preconfigured AsyncOpenAI client (tests, custom base URLs)
            api_key: Used when no client is given; falls back to OPENAI_API_KEY

        Raises:
            ValueError: If model is empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def generate(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        user_text: str,
        max_tokens: int,
        temperature: float
    ) -> str:
        """Generate a reply.

        Args:
            system_prompt: Persona instructions
            history: Prior turns as chat messages, oldest first
            user_text: Sanitized user message
            max_tokens: Completion token limit
            temperature: Sampling temperature

        Returns:
            The completion text, empty if the model returned none
        """
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": user_text})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
