"""Provider client for the conversation service: Anthropic Messages and OpenAI Chat Completions."""
import json
import logging
from typing import AsyncIterator

import httpx

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


async def _sse_payloads(resp: httpx.Response) -> AsyncIterator[dict]:
    """Decoded JSON bodies of the ``data:`` lines in a server-sent event stream."""
    async for line in resp.aiter_lines():
        if not line.startswith("data: "):
            continue
        raw = line[6:].strip()
        if raw == "[DONE]":
            return
        yield json.loads(raw)


class LLMClient:
    """Calls the configured provider; the provider is picked from the model name."""

    def __init__(self, config, timeout: float = 60.0):
        self.config = config
        self._http = httpx.AsyncClient(timeout=timeout)
        # Strip whitespace that leaks in from env vars or YAML
        for provider in ("anthropic", "openai"):
            key = getattr(config.api_keys, provider)
            if key:
                setattr(config.api_keys, provider, key.strip())

    async def close(self):
        await self._http.aclose()

    def _detect_provider(self, model: str) -> str:
        name = model.lower()
        return "anthropic" if ("claude" in name or "anthropic" in name) else "openai"

    async def call_llm(self, model: str, messages: list[dict], temperature: float = 0.7, max_tokens: int = 1024) -> str:
        """One complete reply as text."""
        if self._detect_provider(model) == "anthropic":
            return await self._call_anthropic(model, messages, temperature, max_tokens)
        return await self._call_openai(model, messages, temperature, max_tokens)

    async def call_llm_stream(self, model: str, messages: list[dict], temperature: float = 0.7, max_tokens: int = 1024) -> AsyncIterator[str]:
        """Reply text as it is generated, one delta per yield."""
        if self._detect_provider(model) == "anthropic":
            stream = self._stream_anthropic(model, messages, temperature, max_tokens)
        else:
            stream = self._stream_openai(model, messages, temperature, max_tokens)
        async for delta in stream:
            yield delta

    # ------------------------------------------------------------------
    # Anthropic
    # ------------------------------------------------------------------

    def _anthropic_headers(self) -> dict:
        return {
            "x-api-key": self.config.api_keys.anthropic or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _anthropic_body(model, messages, temperature, max_tokens) -> dict:
        """Messages API body; system turns move to the top-level ``system`` string."""
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        body = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"],
        }
        if system:
            body["system"] = system
        return body

    @staticmethod
    def _check_anthropic_auth(resp: httpx.Response) -> None:
        if resp.status_code == 401:
            raise RuntimeError(
                "Anthropic rejected the API key (401). Set api_keys.anthropic in config.yaml or $ANTHROPIC_API_KEY"
            )

    async def _call_anthropic(self, model, messages, temperature, max_tokens) -> str:
        resp = await self._http.post(
            ANTHROPIC_URL,
            headers=self._anthropic_headers(),
            json=self._anthropic_body(model, messages, temperature, max_tokens),
        )
        self._check_anthropic_auth(resp)
        resp.raise_for_status()
        payload = resp.json()
        usage = payload.get("usage") or {}
        logger.debug(f"[LLM] {model} tokens in={usage.get('input_tokens', 0)} out={usage.get('output_tokens', 0)}")
        return "".join(block.get("text", "") for block in payload.get("content", []))

    async def _stream_anthropic(self, model, messages, temperature, max_tokens) -> AsyncIterator[str]:
        body = {**self._anthropic_body(model, messages, temperature, max_tokens), "stream": True}
        async with self._http.stream("POST", ANTHROPIC_URL, headers=self._anthropic_headers(), json=body) as resp:
            self._check_anthropic_auth(resp)
            resp.raise_for_status()
            async for event in _sse_payloads(resp):
                kind = event.get("type")
                if kind == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        yield text
                elif kind == "error":
                    detail = (event.get("error") or {}).get("message", "unknown")
                    raise RuntimeError(f"Anthropic stream error: {detail}")

    # ------------------------------------------------------------------
    # OpenAI
    # ------------------------------------------------------------------

    def _openai_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.config.api_keys.openai}", "Content-Type": "application/json"}

    @staticmethod
    def _openai_messages(messages) -> list[dict]:
        """Chat Completions takes a single leading system message."""
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
        return [{"role": "system", "content": system}, *turns] if system else turns

    def _openai_body(self, model, messages, temperature, max_tokens, stream=False) -> dict:
        body = {
            "model": model,
            "messages": self._openai_messages(messages),
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if stream:
            body["stream"] = True
        return body

    async def _call_openai(self, model, messages, temperature, max_tokens) -> str:
        resp = await self._http.post(
            OPENAI_URL,
            headers=self._openai_headers(),
            json=self._openai_body(model, messages, temperature, max_tokens),
        )
        if resp.status_code != 200:
            logger.error(f"[LLM] OpenAI {resp.status_code}: {resp.text[:500]}")
        resp.raise_for_status()
        choices = resp.json().get("choices") or []
        return choices[0]["message"]["content"] if choices else ""

    async def _stream_openai(self, model, messages, temperature, max_tokens) -> AsyncIterator[str]:
        body = self._openai_body(model, messages, temperature, max_tokens, stream=True)
        async with self._http.stream("POST", OPENAI_URL, headers=self._openai_headers(), json=body) as resp:
            resp.raise_for_status()
            async for event in _sse_payloads(resp):
                delta = ((event.get("choices") or [{}])[0]).get("delta") or {}
                if delta.get("content"):
                    yield delta["content"]
