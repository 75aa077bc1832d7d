"""Test doubles shared across test modules."""

from budgetline.services.llm_provider import AIErrorKind, Completion, LLMProviderBase


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(LLMProviderBase):
    """Returns scripted completions in order and records every prompt."""

    model = "fake-model"

    def __init__(self, replies=None, available: bool = True):
        self.replies = list(replies or [])
        self.prompts: list[str] = []
        self.available = available

    async def is_available(self) -> bool:
        return self.available

    async def complete(self, prompt: str, max_tokens: int, timeout: float) -> Completion:
        self.prompts.append(prompt)
        if not self.replies:
            return Completion.failed(AIErrorKind.API_ERROR, "no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, str):
            return Completion(text=reply)
        return reply
