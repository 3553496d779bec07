"""
LLM Client for Mediation
========================

Supports:
- OpenRouter (any hosted chat model)
- OpenAI (or any OpenAI-compatible chat completions endpoint)

Used for:
- Translating raw grievances into civil language
- Mediation summaries, rehash, core-issue reflection and final rulings

NOT required for basic operation: every caller has an offline fallback.
"""

import json
import logging
import hashlib
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass, field

import httpx

from .config import get_settings
from .schemas import LLMMode

logger = logging.getLogger(__name__)


# =============================================================================
# Robust JSON Parser
# =============================================================================

def parse_json_robust(content: str) -> Tuple[Optional[Dict], bool, str]:
    """
    Parse a JSON object out of LLM output.

    Handles:
    - Empty content
    - Markdown code blocks (```json...```)
    - Prose before or after the object
    - Several objects (the largest parsable one wins)

    Returns:
        Tuple of (parsed_dict, success, error_message)
    """
    if not content:
        return None, False, "Empty content"

    content = content.strip()

    if "```json" in content:
        start = content.find("```json") + 7
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()
    elif "```" in content:
        start = content.find("```") + 3
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()

    if content:
        try:
            data = json.loads(content)
            if isinstance(data, dict):
                return data, True, ""
        except json.JSONDecodeError:
            pass

    # Collect top-level {...} blocks
    brace_blocks = []
    depth = 0
    start_idx = None
    for i, char in enumerate(content):
        if char == '{':
            if depth == 0:
                start_idx = i
            depth += 1
        elif char == '}' and depth > 0:
            depth -= 1
            if depth == 0 and start_idx is not None:
                brace_blocks.append(content[start_idx:i + 1])
                start_idx = None

    for block in sorted(brace_blocks, key=len, reverse=True):
        try:
            data = json.loads(block)
            if isinstance(data, dict):
                return data, True, ""
        except json.JSONDecodeError:
            continue

    return None, False, "No JSON object found"


def safe_log_content(content: str, max_chars: int = 120) -> str:
    """
    Log-safe representation of user or model text: length, hash, short preview.
    """
    if not content:
        return "(empty)"

    content_hash = hashlib.sha256(content.encode()).hexdigest()[:12]
    preview = content[:max_chars].replace('\n', ' ')

    return f"len={len(content)} hash={content_hash} preview='{preview}...'"


@dataclass
class LLMResponse:
    """Response from LLM"""
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    raw_response: Optional[Dict] = None


class LLMClient:
    """
    Unified chat-completion client.

    Usage:
        client = LLMClient()
        response = await client.generate("Summarize this conflict...")

    `generate` never raises; it returns None when the backend is disabled,
    misconfigured, slow or broken.
    """

    def __init__(self):
        self.settings = get_settings()
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.llm_timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client"""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def enabled(self) -> bool:
        return self.settings.llm_mode != LLMMode.NONE

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        json_mode: bool = False,
        max_tokens: int = 800,
        temperature: Optional[float] = None
    ) -> Optional[LLMResponse]:
        """
        Generate response from LLM.

        Args:
            prompt: User prompt
            system_prompt: System prompt (optional)
            json_mode: Request JSON response
            max_tokens: Maximum tokens
            temperature: Sampling temperature (defaults to LLM_TEMPERATURE)

        Returns:
            LLMResponse or None if failed
        """
        mode = self.settings.llm_mode
        if temperature is None:
            temperature = self.settings.llm_temperature

        if mode == LLMMode.NONE:
            logger.debug("LLM mode is NONE, skipping")
            return None

        try:
            if mode == LLMMode.OPENROUTER:
                return await self._chat_completion(
                    provider="OpenRouter",
                    base_url=self.settings.openrouter_base_url,
                    api_key=self.settings.openrouter_api_key,
                    model=self.settings.openrouter_model,
                    extra_headers={"X-Title": "Squashie Mediation"},
                    prompt=prompt,
                    system_prompt=system_prompt,
                    json_mode=json_mode,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            elif mode == LLMMode.OPENAI:
                return await self._chat_completion(
                    provider="OpenAI",
                    base_url=self.settings.openai_base_url,
                    api_key=self.settings.openai_api_key,
                    model=self.settings.openai_model,
                    extra_headers={},
                    prompt=prompt,
                    system_prompt=system_prompt,
                    json_mode=json_mode,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
        except Exception as e:
            logger.error(f"LLM generation failed: {e}")
            return None

        return None

    async def _chat_completion(
        self,
        provider: str,
        base_url: str,
        api_key: Optional[str],
        model: str,
        extra_headers: Dict[str, str],
        prompt: str,
        system_prompt: Optional[str],
        json_mode: bool,
        max_tokens: int,
        temperature: float
    ) -> Optional[LLMResponse]:
        """Call an OpenAI-compatible /chat/completions endpoint"""
        if not api_key:
            logger.warning(f"{provider} API key not set")
            return None

        client = await self._get_client()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            **extra_headers,
        }

        try:
            response = await client.post(
                f"{base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers
            )
            response.raise_for_status()
            data = response.json()

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as e:
                logger.error(f"{provider} response missing content: {e}")
                return None

            if content is None:
                logger.warning(f"{provider} returned null content")
                content = ""

            usage = data.get("usage", {}) or {}

            return LLMResponse(
                content=content,
                model=model,
                usage={
                    "input_tokens": usage.get("prompt_tokens", 0),
                    "output_tokens": usage.get("completion_tokens", 0)
                },
                raw_response=data
            )

        except httpx.TimeoutException:
            logger.error(f"{provider} request timed out after {self.settings.llm_timeout}s")
            return None
        except httpx.HTTPStatusError as e:
            logger.error(f"{provider} API error: {e.response.status_code} - {e.response.text[:200]}")
            return None
        except Exception as e:
            logger.error(f"{provider} request failed: {e}")
            return None


# Singleton
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Get singleton LLM client"""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


def reset_llm_client() -> None:
    """Drop the singleton (settings changed, primarily for tests)."""
    global _llm_client
    _llm_client = None
