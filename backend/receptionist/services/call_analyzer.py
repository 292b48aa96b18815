import os
import json
import logging
from typing import Any, Dict

from tenacity import retry, wait_exponential, stop_after_attempt
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

INTENTS = ("booking", "pricing", "hours", "complaint", "callback", "other")

POSTCALL_SYSTEM_PROMPT = (
    "You are a post-call analysis assistant for a small business receptionist. Given the full final transcript, "
    "produce one JSON object with exactly these keys:\n\n"
    "{\n  \"summary\": \"<two sentences at most>\",\n"
    "  \"intent\": \"booking\" | \"pricing\" | \"hours\" | \"complaint\" | \"callback\" | \"other\",\n"
    "  \"sentiment\": \"positive\" | \"neutral\" | \"negative\"\n}\n\n"
    "Use only evidence from the transcript. No explanations outside the JSON."
)

_INTENT_HINTS = [
    ("booking", ["appointment", "book", "schedule", "reschedule", "available"]),
    ("pricing", ["price", "cost", "quote", "how much", "rate"]),
    ("hours", ["open", "close", "hours", "weekend"]),
    ("complaint", ["complaint", "unhappy", "refund", "terrible", "disappointed"]),
    ("callback", ["call me back", "callback", "call back"]),
]
_NEGATIVE = ["angry", "terrible", "awful", "unhappy", "disappointed", "frustrated", "refund"]
_POSITIVE = ["thank you", "thanks", "great", "perfect", "wonderful", "appreciate"]


class CallAnalyzer:
    def __init__(self) -> None:
        # Try Groq first, fallback to OpenAI
        groq_key = os.getenv("GROQ_API_KEY")
        openai_key = os.getenv("OPENAI_API_KEY")
        if groq_key and groq_key.strip():
            self.client = AsyncOpenAI(api_key=groq_key, base_url="https://api.groq.com/openai/v1")
            self.model = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
            self.simulated = False
        elif openai_key and openai_key.strip():
            self.client = AsyncOpenAI(api_key=openai_key)
            self.model = os.getenv("OPENAI_ANALYSIS_MODEL", "gpt-4o-mini")
            self.simulated = False
        else:
            self.client = None
            self.model = None
            self.simulated = True
            logger.info("CallAnalyzer using heuristic analysis (no API keys)")

    async def analyze(self, transcript_text: str) -> Dict[str, Any]:
        if not transcript_text or not transcript_text.strip():
            return {"summary": None, "intent": None, "sentiment": None}
        if self.simulated:
            return heuristic_analysis(transcript_text)
        try:
            result = await self._analyze_with_llm(transcript_text)
        except Exception as e:
            logger.warning(f"LLM call analysis failed, using heuristics: {e}")
            return heuristic_analysis(transcript_text)
        intent = (result.get("intent") or "").lower()
        sentiment = (result.get("sentiment") or "").lower()
        return {
            "summary": result.get("summary"),
            "intent": intent if intent in INTENTS else "other",
            "sentiment": sentiment if sentiment in ("positive", "neutral", "negative") else "neutral",
        }

    @retry(wait=wait_exponential(min=1, max=10), stop=stop_after_attempt(3))
    async def _analyze_with_llm(self, transcript_text: str) -> Dict[str, Any]:
        chat = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": POSTCALL_SYSTEM_PROMPT},
                {"role": "user", "content": transcript_text},
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
        content = chat.choices[0].message.content
        if isinstance(content, str):
            return json.loads(content)
        return content or {}


def heuristic_analysis(transcript_text: str) -> Dict[str, Any]:
    text = transcript_text.lower()
    intent = "other"
    for candidate, hints in _INTENT_HINTS:
        if any(h in text for h in hints):
            intent = candidate
            break
    if any(w in text for w in _NEGATIVE):
        sentiment = "negative"
    elif any(w in text for w in _POSITIVE):
        sentiment = "positive"
    else:
        sentiment = "neutral"
    first_line = transcript_text.strip().splitlines()[0]
    return {
        "summary": f"Caller enquiry ({intent}). {first_line[:140]}",
        "intent": intent,
        "sentiment": sentiment,
    }
