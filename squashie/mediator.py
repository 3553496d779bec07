"""
Mediation Service
=================

Text side of the conflict lifecycle:
- translate: raw grievance -> civil message
- mediate: round 1 summary + suggestion
- rehash: round 2 summary + suggestion
- reflect_on_core_issues: round 3 reflection + suggestion
- final_ruling / summarize_ruling: terminal verdict and its public blurb

Every call goes to the LLM first. Any failure (disabled, timeout, HTTP error,
empty or unparsable output) is logged as degraded and answered with the
deterministic transform from `fallback`. Nothing here raises to the engine.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from .config import get_settings
from .errors import ExternalServiceDegraded
from .fallback import (
    soften_message,
    fallback_mediation,
    fallback_rehash,
    fallback_core_reflection,
    fallback_final_ruling,
    fallback_ruling_summary,
    excerpt,
)
from .llm_client import LLMClient, get_llm_client, parse_json_robust, safe_log_content

logger = logging.getLogger(__name__)


MEDIATOR_PERSONA = """You are Squashie, a warm but blunt conflict mediator with a sassy-therapist voice.
You never take cheap shots, never insult either person, and never invent facts
that were not stated. Keep answers short and concrete."""


TRANSLATE_PROMPT = """Rewrite the message below so it can be sent to the other person.
Keep the meaning and the feelings, remove insults, profanity and blame.
Use first person ("I feel...") and keep it under 120 words.
The writer's mood: {mood}

Message:
{text}

Return only the rewritten message."""


MEDIATE_PROMPT = """Two people are in a conflict.

Person 1 says:
{text1}

Person 2 says:
{text2}

Return JSON: {{"summary": "what each person is really upset about, 2-4 sentences",
"suggestion": "one practical step both can take, 2-4 sentences"}}"""


REHASH_PROMPT = """Your first mediation did not resolve this conflict.

Person 1 says:
{text1}

Person 2 says:
{text2}

Your first summary: {prior_summary}
Your first suggestion: {prior_suggestion}

Try a different angle: what did the first attempt miss?
Return JSON: {{"summary": "...", "suggestion": "..."}}"""


CORE_REFLECTION_PROMPT = """Two rounds of mediation did not resolve this conflict, so each person
wrote down the core issue underneath it.

Person 1's core issue: {issue1}
Person 2's core issue: {issue2}

Context so far:
{context}

Reflect on the underlying needs and propose a path forward.
Return JSON: {{"reflection": "...", "suggestion": "..."}}"""


FINAL_RULING_PROMPT = """Three rounds of mediation failed. Issue a final, binding-in-spirit ruling.

Person 1 says:
{text1}

Person 2 says:
{text2}

Be fair, decisive and a little funny. Say who has the stronger point (or call it
a draw) and what each person should do now. 4-8 sentences. Return only the ruling."""


SUMMARIZE_RULING_PROMPT = """Summarize this ruling in one sentence (max 140 characters) for a public feed.
Do not include names or personal details.

Ruling:
{ruling}

Return only the sentence."""


@dataclass
class MediationStats:
    """Counters for LLM calls vs. fallbacks"""
    calls: int = 0
    fallbacks: int = 0


class MediationService:
    """
    LLM-backed mediation with offline fallbacks.

    Usage:
        mediator = MediationService()
        civil = await mediator.translate("you NEVER listen!!!", "rage")
        result = await mediator.mediate(civil, other_civil)
    """

    def __init__(self, client: Optional[LLMClient] = None):
        self.client = client or get_llm_client()
        self.settings = get_settings()
        self.stats = MediationStats()

    async def _generate(self, operation: str, prompt: str, json_mode: bool) -> str:
        """One LLM round trip; raises ExternalServiceDegraded on any failure."""
        self.stats.calls += 1
        try:
            response = await asyncio.wait_for(
                self.client.generate(
                    prompt=prompt,
                    system_prompt=MEDIATOR_PERSONA,
                    json_mode=json_mode,
                ),
                timeout=self.settings.llm_timeout + 5,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceDegraded(f"{operation}: timed out", rule=operation) from e
        except Exception as e:
            raise ExternalServiceDegraded(f"{operation}: {e}", rule=operation) from e

        if response is None:
            raise ExternalServiceDegraded(f"{operation}: no response", rule=operation)

        content = (response.content or "").strip()
        if not content:
            raise ExternalServiceDegraded(f"{operation}: empty response", rule=operation)

        logger.debug(f"LLM {operation} response: {safe_log_content(content)}")
        return content

    async def _ask_json(self, operation: str, prompt: str, keys: Sequence[str]) -> Dict[str, str]:
        content = await self._generate(operation, prompt, json_mode=True)
        data, ok, error = parse_json_robust(content)
        if not ok or not data:
            raise ExternalServiceDegraded(f"{operation}: unparsable JSON ({error})", rule=operation)

        values = {key: str(data.get(key) or "").strip() for key in keys}
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise ExternalServiceDegraded(f"{operation}: missing keys {missing}", rule=operation)
        return values

    def _fallback(self, error: ExternalServiceDegraded) -> None:
        self.stats.fallbacks += 1
        logger.warning(f"Mediation degraded, using offline fallback: {error.message}")

    async def translate(self, raw_text: str, mood: Optional[str] = None) -> str:
        try:
            return await self._generate(
                "translate",
                TRANSLATE_PROMPT.format(text=raw_text, mood=mood or "unspecified"),
                json_mode=False,
            )
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return soften_message(raw_text, mood)

    async def mediate(self, text1: str, text2: str) -> Dict[str, str]:
        try:
            return await self._ask_json(
                "mediate",
                MEDIATE_PROMPT.format(text1=text1, text2=text2),
                ("summary", "suggestion"),
            )
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return fallback_mediation(text1, text2)

    async def rehash(
        self,
        text1: str,
        text2: str,
        prior_summary: str,
        prior_suggestion: str
    ) -> Dict[str, str]:
        try:
            return await self._ask_json(
                "rehash",
                REHASH_PROMPT.format(
                    text1=text1,
                    text2=text2,
                    prior_summary=prior_summary,
                    prior_suggestion=prior_suggestion,
                ),
                ("summary", "suggestion"),
            )
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return fallback_rehash(text1, text2, prior_summary, prior_suggestion)

    async def reflect_on_core_issues(
        self,
        issue1: str,
        issue2: str,
        *context: Optional[str]
    ) -> Dict[str, str]:
        """
        Round 3. `context` is whatever earlier material exists (messages,
        summaries, suggestions); empty entries are skipped.
        """
        context_text = "\n".join(f"- {excerpt(c, 300)}" for c in context if c) or "- (none)"
        try:
            return await self._ask_json(
                "reflect_on_core_issues",
                CORE_REFLECTION_PROMPT.format(issue1=issue1, issue2=issue2, context=context_text),
                ("reflection", "suggestion"),
            )
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return fallback_core_reflection(issue1, issue2)

    async def final_ruling(self, text1: str, text2: str) -> str:
        try:
            return await self._generate(
                "final_ruling",
                FINAL_RULING_PROMPT.format(text1=text1, text2=text2),
                json_mode=False,
            )
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return fallback_final_ruling(text1, text2)

    async def summarize_ruling(self, ruling: str) -> str:
        try:
            summary = await self._generate(
                "summarize_ruling",
                SUMMARIZE_RULING_PROMPT.format(ruling=ruling),
                json_mode=False,
            )
            return excerpt(summary, 140)
        except ExternalServiceDegraded as e:
            self._fallback(e)
            return fallback_ruling_summary(ruling)
