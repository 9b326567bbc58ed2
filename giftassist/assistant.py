from abc import ABC, abstractmethod
from functools import cached_property
from typing import TYPE_CHECKING

import structlog
from ddtrace.trace import tracer
from typing_extensions import override

from .errors import GiftAssistError
from .models import Product
from .retrieval import RetrievalService

if TYPE_CHECKING:
    import openai

logger = structlog.get_logger()

DEFAULT_COMPLETION_MODEL = "gpt-4o-mini"
CHAT_CONTEXT_SIZE = 4

GROUNDED_PROMPT = (
    "You are a helpful gift shop assistant. Answer using only the following "
    "product/knowledge base. If the answer is not in the context, say you "
    "don't have that information.\n\nKnowledge base:\n{context}"
)
EMPTY_CATALOG_PROMPT = (
    "You are a helpful gift shop assistant. You have no product data in the "
    "knowledge base yet. Ask the user to upload an Excel file via the portal, "
    "or answer general gift ideas politely."
)


class EmptyMessageError(GiftAssistError):
    msg = "Missing or invalid message."


class CompletionService(ABC):
    """Generates an answer from a system prompt and the user's message."""

    @abstractmethod
    async def complete(self, system: str, prompt: str) -> str: ...


class OpenAICompletion(CompletionService):
    def __init__(
        self,
        model: str = DEFAULT_COMPLETION_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        client: "openai.AsyncOpenAI | None" = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self._client = client

    @cached_property
    def client(self) -> "openai.AsyncOpenAI":
        if self._client is not None:
            return self._client
        # Note: deferred import to avoid import overhead
        import openai

        return openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    @override
    async def complete(self, system: str, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        )
        return response.choices[0].message.content or ""


def build_system_prompt(products: list[Product]) -> str:
    context = "\n\n".join(p.content for p in products if p.content)
    if not context:
        return EMPTY_CATALOG_PROMPT
    return GROUNDED_PROMPT.format(context=context)


class ChatAssistant:
    """
    Answers shopper questions grounded in the product index.

    The top products for the message become the knowledge base of the
    system prompt. Completion errors propagate to the caller.
    """

    def __init__(self, retrieval: RetrievalService, completion: CompletionService):
        self.retrieval = retrieval
        self.completion = completion

    @tracer.wrap()
    async def reply(self, message: str) -> str:
        message = message.strip()
        if not message:
            raise EmptyMessageError(EmptyMessageError.msg)
        products = await self.retrieval.search(message, CHAT_CONTEXT_SIZE)
        await logger.adebug("chat context", products=len(products))
        return await self.completion.complete(build_system_prompt(products), message)
