import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncAzureOpenAI

from ..core.config import settings

logger = logging.getLogger(__name__)


class EvaluationError(Exception):
    """Raised when an answer cannot be evaluated by the language model."""


WRITING_EXAMINER_PROMPT = """
You are an official IELTS Writing Task examiner.
Evaluate the student's writing strictly according to IELTS criteria.

Return ONLY valid JSON (no markdown, no explanation, no extra text).
The JSON must have the shape:

{
  "band_score": number,
  "criteria_breakdown": {
    "task_response": { "score": number, "feedback": string },
    "cohesion_coherence": { "score": number, "feedback": string },
    "lexical_resource": { "score": number, "feedback": string },
    "grammatical_range_accuracy": { "score": number, "feedback": string }
  },
  "examiner_summary": string
}

"band_score" must be between 1 and 9 (it may be .0 or .5).
Be strict, but fair.
""".strip()

SPEAKING_EXAMINER_PROMPT = """
You are an official IELTS Speaking examiner.

### Questions:
{questions}

### Candidate's Spoken Response (transcription):
"{transcription}"

Return ONLY valid JSON in this exact format:
{{
  "band_score": number,
  "examiner_summary": string,
  "criteria_breakdown": {{
    "fluency": number,
    "coherence": number,
    "vocabulary": number,
    "grammar": number,
    "pronunciation": number
  }}
}}
""".strip()


def parse_band(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        band = float(value)
    except (TypeError, ValueError):
        return None
    return band if band == band else None


class OpenAIService:
    def __init__(self):
        self.client: Optional[AsyncAzureOpenAI] = self._initialize_client()

    def _initialize_client(self) -> Optional[AsyncAzureOpenAI]:
        if not settings.azure_openai_endpoint or not settings.azure_openai_api_key:
            logger.warning("Azure OpenAI not configured (endpoint/api_key missing). AI grading disabled.")
            return None
        return AsyncAzureOpenAI(
            api_version=settings.azure_openai_api_version,
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
        )

    def _parse_json_response(self, response: Optional[str], method_name: str) -> Dict[str, Any]:
        if not response:
            raise EvaluationError(f"Model returned an empty response for {method_name}")
        try:
            parsed = json.loads(response)
        except json.JSONDecodeError as e:
            logger.error(f"Model returned invalid JSON for {method_name}: {response[:200]}")
            raise EvaluationError("Model did not return valid JSON") from e
        if not isinstance(parsed, dict):
            raise EvaluationError("Model did not return a JSON object")
        return parsed

    async def _generate_chat_completion(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 2048,
        temperature: float = 0.3,
    ) -> Optional[str]:
        """Chat completion with a forced JSON object response."""
        if not self.client:
            raise EvaluationError("Azure OpenAI is not configured")
        logger.debug(f"OpenAI request with deployment {settings.azure_openai_deployment}")
        response = await self.client.chat.completions.create(
            model=settings.azure_openai_deployment,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content

    async def grade_writing(self, essay_text: str, question: Optional[str]) -> Dict[str, Any]:
        """Scores one writing task on the IELTS band scale."""
        user_prompt = f"IELTS QUESTION:\n{question or 'N/A'}\n\nSTUDENT ANSWER:\n{essay_text or '(empty)'}"
        messages = [{"role": "user", "content": f"{WRITING_EXAMINER_PROMPT}\n\n{user_prompt}"}]
        response = await self._generate_chat_completion(messages)
        return self._parse_json_response(response, "grade_writing")

    async def grade_speaking(self, questions: List[str], transcription: str) -> Dict[str, Any]:
        if not transcription or not transcription.strip():
            raise EvaluationError("Transcription is empty; cannot grade speaking response.")

        numbered = "\n".join(f"{i + 1}. {q}" for i, q in enumerate(questions))
        prompt = SPEAKING_EXAMINER_PROMPT.format(questions=numbered, transcription=transcription)
        response = await self._generate_chat_completion([{"role": "user", "content": prompt}])
        evaluation = self._parse_json_response(response, "grade_speaking")
        evaluation["transcription"] = transcription
        return evaluation


openai_service = OpenAIService()
