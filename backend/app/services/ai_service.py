# /app/services/ai_service.py

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import openai
import tenacity
from openai import AsyncOpenAI

from app.config import strings
from app.config.persona import (
    AI_SYSTEM_PROMPT,
    CLASSIFICATION_PROMPT_TEMPLATE,
    COMPOSE_PROMPT_TEMPLATE,
    EXTRACTION_PROMPT_TEMPLATE,
)
from app.config.settings import settings
from app.models.flow import FieldDefinition, FlowDefinition
from app.models.session import ComposeRequest
from app.utils.circuit_breaker import CircuitBreaker
from app.utils.metrics import ai_requests_counter

# This service encapsulates all interactions with the AI model: extracting
# field values from free text, guessing which flow a message belongs to and
# composing the reply. Without an API key every capability degrades to a
# deterministic fallback so the flow engine keeps working.

logger = logging.getLogger(__name__)


class FieldExtractor(Protocol):
    async def extract_fields(self, message: str, fields: Dict[str, FieldDefinition], context: Dict[str, Any]) -> Dict[str, Any]: ...


class FlowClassifier(Protocol):
    async def guess_flow(self, message: str, candidates: List[FlowDefinition]) -> Optional[str]: ...


class ResponseComposer(Protocol):
    async def compose_reply(self, request: ComposeRequest) -> str: ...


def _field_label(slug: str, description: str) -> str:
    return description or slug.replace("_", " ")


def render_template_reply(request: ComposeRequest) -> str:
    """Deterministic reply used when no model is configured or the model fails."""
    parts: List[str] = []
    for hint in request.invalid_fields:
        parts.append(strings.INVALID_FIELD_TEMPLATE.format(field=_field_label(hint.slug, hint.description)))
        if hint.suggestion:
            parts.append(strings.INVALID_FIELD_SUGGESTION_TEMPLATE.format(suggestion=hint.suggestion))
    if request.error_context:
        parts.append(request.error_context)
    if request.missing_fields:
        fields = ", ".join(_field_label(field.slug, field.description) for field in request.missing_fields)
        parts.append(strings.ASK_FOR_FIELDS_TEMPLATE.format(fields=fields))
    elif not parts:
        parts.append(strings.STAGE_DONE_TEMPLATE.format(description=request.stage_description).strip())
    return " ".join(parts)


class AIService:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        if client is not None:
            self.openai_client = client
        elif api_key:
            self.openai_client = AsyncOpenAI(api_key=api_key, timeout=settings.ai_request_timeout_seconds)
        else:
            self.openai_client = None
        self.openai_breaker = CircuitBreaker("openai")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _create_completion(self, messages: List[Dict[str, str]], json_mode: bool = False, **kwargs) -> str:
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.openai_client.chat.completions.create(model=self.model, messages=messages, **kwargs)
        return (response.choices[0].message.content or "").strip()

    async def _generate_json_response(self, prompt: str, operation: str) -> Optional[Dict[str, Any]]:
        """Generates a JSON response from OpenAI using its JSON mode."""
        if not self.openai_client:
            return None
        messages = [
            {"role": "system", "content": "You are a helpful assistant designed to output JSON."},
            {"role": "user", "content": prompt},
        ]
        try:
            content = await self.openai_breaker.call(self._create_completion, messages, json_mode=True, temperature=0)
            data = json.loads(content)
        except Exception as e:
            logger.error(f"OpenAI JSON response generation failed for {operation}: {e}")
            ai_requests_counter.labels(operation=operation, status="error").inc()
            return None
        ai_requests_counter.labels(operation=operation, status="success").inc()
        return data if isinstance(data, dict) else None

    async def extract_fields(self, message: str, fields: Dict[str, FieldDefinition], context: Dict[str, Any]) -> Dict[str, Any]:
        if not fields:
            return {}
        field_lines = "\n".join(
            f"- {slug}: {definition.description or slug} ({definition.type}"
            + (f", one of {definition.enum}" if definition.enum else "")
            + ")"
            for slug, definition in fields.items()
        )
        prompt = EXTRACTION_PROMPT_TEMPLATE.format(
            fields=field_lines,
            context=json.dumps(context, ensure_ascii=False, default=str),
            message=message,
        )
        data = await self._generate_json_response(prompt, "extract_fields")
        if not data:
            return {}
        return {slug: value for slug, value in data.items() if slug in fields}

    async def guess_flow(self, message: str, candidates: List[FlowDefinition]) -> Optional[str]:
        if not candidates:
            return None
        flow_lines = "\n".join(f"- {flow.slug}: {flow.description or flow.name}" for flow in candidates)
        prompt = CLASSIFICATION_PROMPT_TEMPLATE.format(flows=flow_lines, message=message)
        data = await self._generate_json_response(prompt, "guess_flow")
        slug = (data or {}).get("flow")
        if slug and any(flow.slug == slug for flow in candidates):
            return slug
        return None

    async def compose_reply(self, request: ComposeRequest) -> str:
        if self.openai_client:
            prompt = COMPOSE_PROMPT_TEMPLATE.format(
                stage_description=request.stage_description or "-",
                stage_prompt=request.stage_prompt or "-",
                missing_fields=", ".join(f"{f.slug} ({f.description})" for f in request.missing_fields) or "none",
                invalid_fields="; ".join(
                    f"{hint.slug}: {hint.reason}" + (f" (suggest {hint.suggestion})" if hint.suggestion else "")
                    for hint in request.invalid_fields
                ) or "none",
                error_context=request.error_context or "none",
                collected=json.dumps(request.collected, ensure_ascii=False, default=str),
                message=request.message,
            )
            messages = [
                {"role": "system", "content": AI_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ]
            try:
                reply = await self.openai_breaker.call(self._create_completion, messages, max_tokens=250, temperature=0.4)
                ai_requests_counter.labels(operation="compose_reply", status="success").inc()
                if reply:
                    return reply
            except Exception as e:
                logger.error(f"OpenAI reply composition failed, using template reply: {e}")
                ai_requests_counter.labels(operation="compose_reply", status="error").inc()
        return render_template_reply(request)
