"""Answers guest questions about a restaurant using OpenAI."""

import logging
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from tablenow.config import get_config
from tablenow.errors import KnowledgeBaseError
from tablenow.services.store import ReservationStore

logger = logging.getLogger(__name__)


class KnowledgeBase(Protocol):
    async def answer_question(self, tenant_id: str, question: str) -> str: ...


class OpenAIKnowledgeService:
    """Answers questions from the tenant's stored restaurant information.

    Document extraction and retrieval happen elsewhere; this service only sees
    the tenant's consolidated FAQ text.
    """

    def __init__(self, store: ReservationStore, client: AsyncOpenAI | None = None) -> None:
        self.config = get_config()
        self.store = store
        self.client = client
        if self.client is None and self.config.openai_api_key:
            self.client = AsyncOpenAI(api_key=self.config.openai_api_key)

    async def answer_question(self, tenant_id: str, question: str) -> str:
        """Answer ``question`` for the given tenant.

        Raises:
            KnowledgeBaseError: If the tenant is unknown or OpenAI is unavailable
        """
        if self.client is None:
            msg = "OpenAI is not configured"
            raise KnowledgeBaseError(msg)

        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            msg = f"Unknown tenant {tenant_id}"
            raise KnowledgeBaseError(msg)

        prompt = f"""You are the phone assistant for {tenant.name}.

Restaurant information:
{tenant.faq_text or "No additional information available."}

Customer question: {question}

Answer helpfully and concisely, in one or two spoken sentences. If the
information above does not cover the question, say so and suggest contacting
the restaurant directly."""

        try:
            response = await self.client.chat.completions.create(
                model=self.config.knowledge_model,
                messages=[
                    {
                        "role": "system",
                        "content": "You answer questions about a single restaurant.",
                    },
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
            )
        except OpenAIError as e:
            msg = f"OpenAI request failed: {e}"
            raise KnowledgeBaseError(msg) from e

        answer = response.choices[0].message.content or ""
        logger.info(f"Answered question for tenant {tenant_id}")
        return answer.strip()
