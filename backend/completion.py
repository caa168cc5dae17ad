"""Language-model prompts over OpenRouter chat completions.

Factual tasks (impersonated answers, the escalation gate, contact Q&A) run at
temperature 0. Only the opening incident summary uses a warmer setting.
"""

import json
import logging
import re
from typing import Optional

import httpx
from pydantic import ValidationError

from config import Settings
from models import Answered, EscalationVerdict, InsufficientContext

logger = logging.getLogger(__name__)

BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

FALLBACK_SUMMARY = "This is an emergency. Please send help."
NO_ANSWER = "No clear answer found."

SUMMARY_PARAMS = {"max_tokens": 2000, "temperature": 0.7, "top_p": 0.9}
FACTUAL_PARAMS = {
    "max_tokens": 200,
    "temperature": 0,
    "top_p": 1,
    "frequency_penalty": 0,
    "presence_penalty": 0,
}

SUMMARY_PROMPT = """You are WhisprNet, a voice assistant conveying an urgent emergency message on behalf of a user in distress.

Your task is to generate a short, factual, and calm message starting with:
"I am WhisprNet, a voice assistant conveying an urgent message from a user in need."

Then summarize the emergency using ONLY the data provided below. Do NOT add any suggestions, warnings, emotional tone, or extra details. Use exact values.

Situation: "{situation}"
Location: "{location}"
Number of threats reported: {threats}

Respond in a single paragraph."""

IMPERSONATION_PROMPT = """You are speaking on a phone call in place of a person in danger who cannot talk.
The emergency responder asked: "{question}"

Reply in first person as that person, using ONLY information clearly present in their messages below.
Do not guess, invent, or add details. If the messages do not contain the answer, you must not answer.

Return ONLY a JSON object: {{"answerable": true or false, "answer": "<first-person reply or empty>"}}

User messages:
---
{context}
---"""

ESCALATION_PROMPT = """Analyze the chat history below. Only return "valid": "Yes" if all three details are clearly and explicitly present in the user's messages: (1) the user's name, (2) the type of emergency or threat, and (3) a specific location. Do not infer or guess missing information. Also return a short emergency summary based only on the facts mentioned. If any one of the three is missing, return "valid": "No".

Respond in this strict JSON format: {{"valid": "...", "reason": "...", "summary": "..."}}

Chat:
{chat}

Location:
{location}"""

QA_PROMPT = """You are WhisprNet AI assisting a concerned emergency contact. Based on the messages from the user in this emergency session, answer the contact's question factually. Do not guess, invent, or provide suggestions. Only respond with clearly known facts.

Session ID: {session_id}
User Messages:
{context}
Contact Question: "{question}"
Answer:"""


class CompletionError(Exception):
    """The completion service could not produce a reply."""


def _extract_json(raw: str) -> Optional[dict]:
    clean_raw = raw.replace("```json", "").replace("```", "").strip()
    json_match = re.search(r"\{[\s\S]*\}", clean_raw)
    if not json_match:
        return None
    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class CompletionClient:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def _complete(self, prompt: str, model: str, params: dict, json_mode: bool = False) -> str:
        if not self.settings.openrouter_api_key:
            raise CompletionError("OPENROUTER_API_KEY not configured")

        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            **params,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.settings.openrouter_api_key}",
            "Content-Type": "application/json",
            "X-Title": "WhisprNet",
        }
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                res = await client.post(BASE_URL, headers=headers, json=payload)
                res.raise_for_status()
                body = res.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionError(str(e)) from e

        content = (body.get("choices") or [{}])[0].get("message", {}).get("content") or ""
        return content.strip()

    async def summarize_incident(self, situation: str, location: str, threats: int) -> str:
        """One-shot spoken summary of the submitted facts; falls back to a fixed line."""
        prompt = SUMMARY_PROMPT.format(situation=situation, location=location, threats=threats)
        try:
            summary = await self._complete(prompt, self.settings.summary_model, SUMMARY_PARAMS)
        except CompletionError:
            logger.exception("Incident summary failed, using fallback line")
            return FALLBACK_SUMMARY
        return summary or FALLBACK_SUMMARY

    async def answer_as_victim(self, question: str, context: list[str]) -> Answered | InsufficientContext:
        """Answer the responder's question in the victim's voice, or refuse.

        Raises CompletionError if the service itself fails; a reply that does
        not follow the JSON contract counts as a refusal.
        """
        if not context:
            return InsufficientContext()

        prompt = IMPERSONATION_PROMPT.format(question=question, context="\n".join(context))
        raw = await self._complete(prompt, self.settings.factual_model, FACTUAL_PARAMS, json_mode=True)
        data = _extract_json(raw)
        if data is None:
            logger.warning("Impersonation reply was not JSON: %r", raw[:200])
            return InsufficientContext()

        answer = str(data.get("answer") or "").strip()
        if data.get("answerable") is not True or not answer:
            return InsufficientContext()
        return Answered(text=answer)

    async def judge_escalation(self, chat: list[str], location: str) -> Optional[EscalationVerdict]:
        """Strict yes/no on whether name, emergency type and location are all known.

        Returns None when the model output cannot be parsed.
        """
        prompt = ESCALATION_PROMPT.format(chat="\n".join(chat), location=location)
        raw = await self._complete(prompt, self.settings.factual_model, {**FACTUAL_PARAMS, "max_tokens": 500}, json_mode=True)
        data = _extract_json(raw)
        if data is None:
            return None
        try:
            return EscalationVerdict(
                valid=str(data.get("valid", "")).strip().lower() == "yes",
                reason=str(data.get("reason") or ""),
                summary=str(data.get("summary") or "").strip(),
            )
        except ValidationError:
            return None

    async def answer_question(self, session_id: str, question: str, context: list[str]) -> str:
        prompt = QA_PROMPT.format(session_id=session_id, context="\n".join(context), question=question)
        answer = await self._complete(prompt, self.settings.factual_model, FACTUAL_PARAMS)
        return answer or NO_ANSWER
