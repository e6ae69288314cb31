import os
from typing import AsyncGenerator, Callable
from openai import AsyncOpenAI
from threadchat.config import get_settings

TITLE_PROMPT = (
    "Generate a very short, concise title (3-5 words max) for a conversation "
    "that starts with the following message. Respond with ONLY the title, "
    "no quotes, no explanation."
)


def _make_openai_client() -> AsyncOpenAI:
    """Create an AsyncOpenAI client with optional LangSmith tracing."""
    settings = get_settings()
    client = AsyncOpenAI(
        api_key=settings.llm_api_key,
        base_url=settings.llm_api_base,
    )

    # Wrap with LangSmith tracing if configured
    if settings.langsmith_api_key:
        from langsmith.wrappers import wrap_openai
        os.environ.setdefault("LANGCHAIN_TRACING_V2", "true")
        os.environ.setdefault("LANGCHAIN_API_KEY", settings.langsmith_api_key)
        os.environ.setdefault("LANGCHAIN_ENDPOINT", settings.langsmith_endpoint)
        os.environ.setdefault("LANGCHAIN_PROJECT", settings.langsmith_project)
        client = wrap_openai(client)

    return client


class ConversationHandle:
    """
    Running dialogue with one model.

    Chat Completions is stateless, so the handle owns the turn list and
    replays it on every request. The LLM service is looked up per call so a
    client rebuilt after a key change is picked up without dropping turns.
    """

    def __init__(self, model: str, llm_provider: Callable[[], "LLMService"] | None = None):
        self.model = model
        self._llm_provider = llm_provider or get_llm_service
        self._turns: list[dict] = []

    @property
    def turns(self) -> list[dict]:
        return list(self._turns)

    @property
    def turn_count(self) -> int:
        return len(self._turns)

    async def send(self, text: str) -> str:
        self._turns.append({"role": "user", "content": text})
        try:
            reply = await self._llm_provider().chat_completion(
                messages=list(self._turns), model=self.model
            )
        except BaseException:
            self._turns.pop()
            raise
        self._turns.append({"role": "assistant", "content": reply})
        return reply

    async def send_streaming(self, text: str) -> AsyncGenerator[str, None]:
        """
        Stream the reply to text.

        The assistant turn is recorded once the stream is exhausted. If the
        stream breaks, the user turn is dropped again.
        """
        self._turns.append({"role": "user", "content": text})
        reply = ""
        try:
            async for chunk in self._llm_provider().chat_completion_stream(
                messages=list(self._turns), model=self.model
            ):
                reply += chunk
                yield chunk
        except BaseException:
            self._turns.pop()
            raise
        self._turns.append({"role": "assistant", "content": reply})

    def record_turn(self, user_text: str, assistant_text: str) -> None:
        self._turns.append({"role": "user", "content": user_text})
        self._turns.append({"role": "assistant", "content": assistant_text})


class LLMService:
    """
    Generic LLM service using OpenAI-compatible Chat Completions API.
    Works with Gemini's OpenAI endpoint, OpenAI, OpenRouter, Ollama, etc.
    Automatically traced via LangSmith when configured.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        settings = get_settings()
        self.client = client or _make_openai_client()
        self.model = settings.llm_model
        self.title_model = settings.title_model
        self.temperature = settings.llm_temperature
        self.top_p = settings.llm_top_p
        self.max_output_tokens = settings.llm_max_output_tokens

    def create_conversation(self, model: str) -> ConversationHandle:
        return ConversationHandle(model)

    async def chat_completion_stream(
        self,
        messages: list[dict],
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> AsyncGenerator[str, None]:
        """
        Stream a chat completion response.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model override, defaults to the configured chat model
            system_prompt: Optional system prompt to prepend
        """
        chat_messages = []

        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})

        chat_messages.extend(messages)

        stream = await self.client.chat.completions.create(
            model=model or self.model,
            messages=chat_messages,
            stream=True,
        )

        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def chat_completion(
        self,
        messages: list[dict],
        model: str | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Get a non-streaming chat completion response.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model override, defaults to the configured chat model
            system_prompt: Optional system prompt to prepend
            max_tokens: Optional max tokens limit
        """
        chat_messages = []

        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})

        chat_messages.extend(messages)

        kwargs = {
            "model": model or self.model,
            "messages": chat_messages,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = await self.client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()

    async def generate(self, model: str, parts: list[dict]) -> str:
        """
        One-shot multimodal request outside any conversation.

        parts use the Chat Completions content-part format
        ({"type": "text", ...} / {"type": "image_url", ...}).
        """
        response = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": parts}],
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_output_tokens,
        )
        return response.choices[0].message.content or ""

    async def generate_title(self, content: str) -> str:
        """Generate a short title for a conversation based on the first message."""
        title = await self.chat_completion(
            messages=[{"role": "user", "content": content}],
            model=self.title_model,
            system_prompt=TITLE_PROMPT,
            max_tokens=20,
        )
        return title.strip().strip('"').strip()


# Singleton instance, rebuilt when the LLM settings change
_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service


def reset_llm_service() -> None:
    global _llm_service
    _llm_service = None
