import base64
from typing import List, Optional

import httpx

from oyadeki.logging_config import get_logger
from oyadeki.services.llm.base import ImagePart, LLMProvider, LLMResponse

logger = get_logger("llm.gemini")


class GeminiError(Exception):
    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Gemini API error: {status_code} - {detail}")


class GeminiProvider(LLMProvider):
    """Google Gemini generateContent provider (REST)."""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(
        self,
        api_key: str,
        default_model: str = "gemini-2.5-flash",
        fallback_models: Optional[List[str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.fallback_models = [m for m in (fallback_models or []) if m != default_model]
        self._transport = transport

    def _build_payload(
        self,
        prompt: str,
        images: Optional[List[ImagePart]],
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> dict:
        parts: list[dict] = [{"text": prompt}]
        for image in images or []:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": image.mime_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )

        generation_config: dict = {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
            # Thinking tokens eat into the output budget and add latency.
            "thinkingConfig": {"thinkingBudget": 0},
        }
        if json_output:
            generation_config["response_mime_type"] = "application/json"

        return {"contents": [{"parts": parts}], "generationConfig": generation_config}

    @staticmethod
    def _extract_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("text") and not part.get("thought"):
                return part["text"]
        return ""

    def _post(self, model: str, payload: dict, timeout: float) -> LLMResponse:
        url = self.BASE_URL.format(model=model)
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            logger.debug(f"Gemini request: model={model}")
            response = client.post(
                url,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
            )

        logger.debug(f"Gemini response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"Gemini error: model={model} status={response.status_code} body={response.text[:500]}")
            raise GeminiError(response.status_code, response.text)

        data = response.json()
        content = self._extract_text(data)
        logger.debug(f"Gemini content: {content[:100] if content else 'EMPTY'}")
        return LLMResponse(content=content, model=model, usage=data.get("usageMetadata"))

    def generate(
        self,
        prompt: str,
        images: Optional[List[ImagePart]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        json_output: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from Gemini, walking the fallback models on API errors."""
        if not self.api_key:
            raise GeminiError(0, "GEMINI_API_KEY is not set")

        payload = self._build_payload(prompt, images, temperature, max_tokens, json_output)
        timeout = timeout_seconds if timeout_seconds is not None else 30.0

        models = [model or self.default_model]
        models.extend(m for m in self.fallback_models if m not in models)

        last_error: GeminiError | None = None
        for candidate_model in models:
            try:
                return self._post(candidate_model, payload, timeout)
            except GeminiError as e:
                last_error = e
                logger.warning(f"Gemini model {candidate_model} failed, trying next: {e.status_code}")
        raise last_error
