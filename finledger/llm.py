from __future__ import annotations

import logging
from typing import Protocol

from langchain_core.messages import HumanMessage
from langchain_openai import ChatOpenAI

from finledger.settings import settings

logger = logging.getLogger(__name__)


class ModelUnavailable(RuntimeError):
    """Raised when the generative model cannot produce a reply."""


class TextModel(Protocol):
    def generate(self, prompt: str) -> str: ...


class ChatModelClient:
    """Single prompt-in, text-out call to the chat model. No retry, no streaming."""

    def __init__(self, model_name: str | None = None, api_key: str | None = None, temperature: float | None = None):
        self.model_name = model_name or settings.MODEL_NAME
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.temperature = settings.MODEL_TEMPERATURE if temperature is None else temperature
        self._model: ChatOpenAI | None = None

    def _get_model(self) -> ChatOpenAI:
        if self._model is None:
            self._model = ChatOpenAI(
                model=self.model_name,
                api_key=self.api_key,
                temperature=self.temperature,
                max_retries=0,
            )
        return self._model

    def generate(self, prompt: str) -> str:
        try:
            response = self._get_model().invoke([HumanMessage(content=prompt)])
        except Exception as exc:
            logger.exception("Model call failed")
            raise ModelUnavailable("Generative model request failed.") from exc

        text = response.content if isinstance(response.content, str) else _join_content(response.content)
        if not text or not text.strip():
            raise ModelUnavailable("Generative model returned an empty response.")
        logger.debug("Model response: %s", text)
        return text


def _join_content(parts: list) -> str:
    chunks = []
    for part in parts:
        if isinstance(part, str):
            chunks.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            chunks.append(part.get("text", ""))
    return "".join(chunks)
