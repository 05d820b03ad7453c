"""
AI template generation client.

Asks a chat-completion model for a Terraform configuration and returns the
generated files. The output is untrusted text: callers run it through the
same parser as user-submitted configurations.
"""
from typing import Any, Dict, List, Optional
import json
import logging
import re

import httpx

from iac_engine.core.config import config
from iac_engine.core.errors import ExternalServiceError, GenerationError
from iac_engine.resilience.circuit_breaker import get_circuit_breaker


logger = logging.getLogger(__name__)


FENCE_RE = re.compile(r"```[a-zA-Z]*")

SYSTEM_PROMPT = """You are an expert Terraform infrastructure architect.
Generate Terraform configuration for the {provider} provider from the user's description.
{context}
Return ONLY a JSON object with this structure:
{{
  "files": {{
    "main.tf": "...",
    "variables.tf": "...",
    "outputs.tf": "..."
  }}
}}
Every file value must be valid HCL as a JSON string. Do not include provider credentials."""


class GeneratorAPIError(Exception):
    """Raised when the chat-completion request fails."""
    pass


def strip_fences(text: str) -> str:
    """Remove markdown code fences a model may wrap its answer in."""
    return FENCE_RE.sub("", text or "").strip()


def resource_context(resources: List[Any]) -> str:
    """Prompt section describing resources that already exist in the account."""
    if not resources:
        return ""
    lines = [
        f"- {resource.resource_type}: {resource.name or resource.resource_id} ({resource.region})"
        for resource in resources
    ]
    return (
        "These resources already exist in the account. Prefer referencing them "
        "(data sources or imports) over creating duplicates:\n" + "\n".join(lines)
    )


class TemplateGenerator:
    """Chat-completion client for configuration generation."""

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the client.

        Args:
            api_key: Provider API key (defaults to config value)
            transport: Optional httpx transport (tests inject a mock)
        """
        self.api_key = api_key or config.MISTRAL_API_KEY
        self.base_url = config.MISTRAL_API_BASE_URL
        self.model = config.MISTRAL_MODEL
        self.timeout = config.MISTRAL_TIMEOUT
        self.max_tokens = config.MISTRAL_MAX_TOKENS
        self.transport = transport
        self.circuit_breaker = get_circuit_breaker("ai_generation")

    async def chat_completion(self, messages: List[Dict[str, str]], temperature: float = 0.1) -> Dict[str, Any]:
        """
        Send a chat completion request.

        Raises:
            GeneratorAPIError: If the request fails
        """
        if not self.api_key:
            raise GeneratorAPIError("AI API key is not configured")

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "max_tokens": self.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as error:
            try:
                detail = error.response.json().get("error", {}).get("message", str(error))
            except (json.JSONDecodeError, AttributeError):
                detail = error.response.text or str(error)
            raise GeneratorAPIError(
                f"AI request failed: {detail} (status: {error.response.status_code})"
            ) from error

        except httpx.TimeoutException as error:
            raise GeneratorAPIError(f"AI request timed out after {self.timeout}s") from error

        except httpx.RequestError as error:
            raise GeneratorAPIError(f"Failed to connect to AI API: {error}") from error

    async def generate_files(self, prompt: str, provider: str, context: str = "") -> Dict[str, str]:
        """
        Generate configuration files for a description.

        Returns:
            Mapping of file name to HCL text; always contains 'main.tf'

        Raises:
            ExternalServiceError: AI provider unavailable
            GenerationError: Blocked request or unusable output
        """
        if not self.circuit_breaker.allow_request():
            raise ExternalServiceError("AI generation")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT.format(provider=provider, context=context)},
            {"role": "user", "content": f"User request: {prompt}"},
        ]
        try:
            response = await self.chat_completion(messages)
        except GeneratorAPIError as error:
            message = str(error).lower()
            if "safety" in message or "blocked" in message:
                self.circuit_breaker.record_success()
                raise GenerationError(
                    "Request was blocked by safety filters. Please rephrase your architecture description."
                ) from error
            self.circuit_breaker.record_failure()
            logger.error(f"AI generation request failed: {error}")
            raise ExternalServiceError("AI generation") from error

        self.circuit_breaker.record_success()

        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as error:
            raise GenerationError("AI returned an empty response.") from error

        cleaned = strip_fences(content)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as error:
            logger.warning(f"Unparseable AI response: {cleaned[:500]}")
            raise GenerationError("AI returned invalid response. Please try again.") from error

        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, dict) or not isinstance(files.get("main.tf"), str):
            raise GenerationError("AI response missing required Terraform files.")

        return {name: strip_fences(text) for name, text in files.items() if isinstance(text, str)}
