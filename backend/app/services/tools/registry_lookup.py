# /app/services/tools/registry_lookup.py

"""Look a company up in the public companies registry by its registration number."""

import json
import logging
from typing import Any, Dict, Optional

import httpx
import tenacity

from app.config.settings import settings
from app.models.tool import ToolExecutionContext, ToolResult
from app.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from app.workflows.validator import is_valid_id_checksum, normalize_id_digits

logger = logging.getLogger(__name__)

REGISTRATION_ID_FIELDS = ("business_registration_id", "regNum", "entity_tax_id")

# Column names of the registry datastore resource
COLUMN_ID = "מספר חברה"
COLUMN_NAME = "שם חברה"
COLUMN_NAME_EN = "שם באנגלית"
COLUMN_TYPE = "סוג תאגיד"
COLUMN_STATUS = "סטטוס חברה"


class RegistryClient:
    def __init__(self, base_url: str, resource_id: str, timeout: float, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self.resource_id = resource_id
        self.circuit_breaker = CircuitBreaker("companies_registry", failure_threshold=5, timeout=60)
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0)
        )

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=4),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await func(*args, **kwargs)

    async def _search(self, registration_id: str) -> Optional[Dict[str, Any]]:
        params = {
            "resource_id": self.resource_id,
            "filters": json.dumps({COLUMN_ID: int(registration_id)}),
            "limit": 1,
        }
        resp = await self.resilient_api_call(self.http_client.get, self.base_url, params=params)
        resp.raise_for_status()
        records = (resp.json().get("result") or {}).get("records") or []
        return records[0] if records else None

    async def find_company(self, registration_id: str) -> Optional[Dict[str, Any]]:
        return await self.circuit_breaker.call(self._search, registration_id)

    async def close(self):
        await self.http_client.aclose()


def record_to_save_results(record: Dict[str, Any]) -> Dict[str, Any]:
    results = {
        "entity_name": (record.get(COLUMN_NAME) or "").strip() or None,
        "entity_name_en": (record.get(COLUMN_NAME_EN) or "").strip() or None,
        "registry_entity_type": record.get(COLUMN_TYPE),
        "registry_status": record.get(COLUMN_STATUS),
        "registry_match": True,
    }
    return {key: value for key, value in results.items() if value is not None}


def _registration_id(payload: Dict[str, Any]) -> Optional[str]:
    for slug in REGISTRATION_ID_FIELDS:
        id9 = normalize_id_digits(payload.get(slug))
        if id9:
            return id9
    return None


def create_tool(deps):
    client = deps.extra.get("registry_client") or RegistryClient(
        settings.registry_api_url,
        settings.registry_resource_id,
        settings.registry_timeout_seconds,
    )

    async def lookup_registry(payload: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        registration_id = _registration_id(payload)
        if not registration_id or not is_valid_id_checksum(registration_id):
            return ToolResult.fail("That registration number doesn't look valid", "INVALID_REGISTRATION_ID")

        try:
            record = await client.find_company(registration_id)
        except CircuitOpenError as e:
            return ToolResult.fail(f"Registry endpoint unavailable: {e}", "REGISTRY_UNAVAILABLE", status=503)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Registry lookup failed with status code {status} for conversation {context.conversation_id}")
            return ToolResult.fail(f"Registry request failed with status code {status}", "REGISTRY_HTTP_ERROR", status=status)
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"Registry lookup network error for conversation {context.conversation_id}: {e}")
            return ToolResult.fail(f"Registry network error: {e}", "REGISTRY_UNAVAILABLE", status=503)

        if record is None:
            return ToolResult.fail("No company found for that registration number", "NOT_FOUND", status=404)

        return ToolResult.ok(
            data={"registrationId": registration_id},
            save_results=record_to_save_results(record),
        )

    return lookup_registry
