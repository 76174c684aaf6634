"""
LLM gateway over an OpenAI-compatible chat-completion and embedding API
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import json
import re
import time

import httpx
from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import JsonOutputParser
import structlog

from rag_grader.config import Settings, settings
from rag_grader.core.exceptions import ProviderError
from rag_grader.core.logging import metrics_logger

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant."
_RAW_BODY_LOG_LIMIT = 2000


@dataclass(frozen=True)
class ProviderConfig:
    """Explicit provider configuration handed to the gateway at construction"""
    base_url: str
    api_key: str
    chat_model: str
    embedding_model: str
    embedding_dim: int
    timeout_seconds: float = 120.0
    app_title: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ProviderConfig":
        return cls(
            base_url=cfg.llm_base_url,
            api_key=cfg.llm_api_key,
            chat_model=cfg.llm_model,
            embedding_model=cfg.embedding_model,
            embedding_dim=cfg.embedding_dim,
            timeout_seconds=float(cfg.llm_timeout),
            app_title=cfg.llm_app_title,
        )


class LlmGateway:
    """One outbound call per invocation; never retries on its own.

    ``complete`` returns the assistant text of the first choice, ``embed``
    returns the first embedding vector. Every failure surfaces as
    ProviderError with the HTTP status (None for transport failures) and the
    raw body, or ``malformed=True`` when a 2xx body lacks the expected fields.
    """

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._headers = {"Content-Type": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        if config.app_title:
            self._headers["X-Title"] = config.app_title
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(config.timeout_seconds),
        )

    async def aclose(self):
        await self._client.aclose()

    async def complete(self, prompt: str, expect_json: bool = False) -> str:
        body: Dict[str, Any] = {
            "model": self.config.chat_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        if expect_json:
            body["response_format"] = {"type": "json_object"}

        operation = "complete_json" if expect_json else "complete"
        metrics_logger.log_llm_request(self.config.chat_model, operation, len(prompt))
        start = time.time()
        try:
            payload, resp = await self._post("chat/completions", body)
            content = _extract_choice_content(payload, resp)
        except ProviderError:
            metrics_logger.log_llm_complete(self.config.chat_model, operation,
                                            time.time() - start, success=False)
            raise

        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        metrics_logger.log_llm_complete(
            self.config.chat_model,
            operation,
            time.time() - start,
            tokens_used=int(usage.get("total_tokens") or 0),
        )
        return content

    async def embed(self, text: str) -> List[float]:
        body = {"model": self.config.embedding_model, "input": text}
        start = time.time()
        try:
            payload, resp = await self._post("embeddings", body)
            vector = _extract_embedding(payload, resp, self.config.embedding_dim)
        except ProviderError:
            metrics_logger.log_embedding_complete(self.config.embedding_model,
                                                  time.time() - start, success=False)
            raise
        metrics_logger.log_embedding_complete(self.config.embedding_model, time.time() - start)
        return vector

    async def _post(self, path: str, body: Dict[str, Any]) -> Tuple[Dict[str, Any], httpx.Response]:
        try:
            resp = await self._client.post(path, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.error("Provider request timed out", path=path, error=str(e))
            raise ProviderError(f"Provider request to '{path}' timed out") from e
        except httpx.HTTPError as e:
            logger.error("Provider request failed", path=path, error=str(e))
            raise ProviderError(f"Provider request to '{path}' failed: {e}") from e

        raw_body = resp.text
        if not resp.is_success:
            logger.error("Provider HTTP error",
                         path=path,
                         status_code=resp.status_code,
                         body=raw_body[:_RAW_BODY_LOG_LIMIT])
            raise ProviderError(
                f"Provider HTTP error {resp.status_code} on '{path}'",
                status_code=resp.status_code,
                raw_body=raw_body,
            )

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise _malformed(f"Provider returned non-JSON body on '{path}'", resp.status_code, raw_body) from e
        if not isinstance(payload, dict):
            raise _malformed(f"Provider returned a non-object body on '{path}'", resp.status_code, raw_body)
        return payload, resp


def _malformed(message: str, status_code: Optional[int], raw_body: Optional[str]) -> ProviderError:
    logger.error("Malformed provider response", reason=message,
                 body=(raw_body or "")[:_RAW_BODY_LOG_LIMIT])
    return ProviderError(message, status_code=status_code, raw_body=raw_body, malformed=True)


def _extract_choice_content(payload: Dict[str, Any], resp: httpx.Response) -> str:
    raw_body, status = resp.text, resp.status_code
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise _malformed("Provider returned no choices", status, raw_body)

    first = choices[0] if isinstance(choices[0], dict) else {}
    content = None
    message = first.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        content = message["content"]
    elif isinstance(message, str):
        content = message

    if (content is None or not content.strip()) and isinstance(first.get("text"), str):
        content = first["text"]

    if content is None or not content.strip():
        raise _malformed("Provider returned empty content", status, raw_body)
    return content


def _extract_embedding(payload: Dict[str, Any], resp: httpx.Response, expected_dim: int) -> List[float]:
    raw_body, status = resp.text, resp.status_code
    data = payload.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise _malformed("Provider returned no embedding data", status, raw_body)

    embedding = data[0].get("embedding")
    if not isinstance(embedding, list) or not embedding:
        raise _malformed("Provider returned an empty or invalid embedding", status, raw_body)
    if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in embedding):
        raise _malformed("Provider embedding contains non-numeric values", status, raw_body)
    if len(embedding) != expected_dim:
        raise _malformed(
            f"Provider embedding has {len(embedding)} dimensions, expected {expected_dim}",
            status,
            raw_body,
        )
    return [float(v) for v in embedding]


_json_parser = JsonOutputParser()


def _strip_code_fences(text: str) -> str:
    """Remove markdown code fences and extract the body if present."""
    fence_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, re.IGNORECASE)
    if fence_match:
        return fence_match.group(1).strip()
    return text.strip()


def parse_json_payload(text: str) -> Any:
    """Best-effort conversion of model output to a JSON value.

    Raises ValueError when nothing JSON-like can be recovered.
    """
    raw = (text or "").strip()
    if not raw:
        raise ValueError("empty model output")
    try:
        return _json_parser.parse(raw)
    except OutputParserException:
        pass

    candidate = _strip_code_fences(raw)
    try:
        return json.loads(candidate)
    except ValueError:
        pass

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        return json.loads(candidate[start:end + 1])
    raise ValueError("model output contains no JSON object")


# Singleton instance
_llm_gateway: Optional[LlmGateway] = None


def get_llm_gateway() -> LlmGateway:
    """Get singleton gateway built from application settings"""
    global _llm_gateway
    if _llm_gateway is None:
        _llm_gateway = LlmGateway(ProviderConfig.from_settings(settings))
    return _llm_gateway


async def close_llm_gateway():
    global _llm_gateway
    if _llm_gateway is not None:
        await _llm_gateway.aclose()
        _llm_gateway = None
