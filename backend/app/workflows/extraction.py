# /app/workflows/extraction.py

"""
Turning a free-text message into candidate field values.

The extraction model only sees the fields that matter right now: the current
stage's ``fieldsToCollect`` plus a small allow-list of identity fields the
flow defines. Deterministic pattern matches for e-mail addresses, id numbers
and Israeli mobile numbers fill in whatever the model missed.
"""

import logging
import re
from typing import Any, Dict, Optional

from app.models.flow import FieldDefinition, FlowDefinition, StageDefinition
from app.workflows.validator import (
    is_present,
    is_valid_id_checksum,
    looks_like_email_field,
    looks_like_mobile_field,
    looks_like_national_id_field,
    looks_like_registration_id_field,
    normalize_israeli_mobile,
)

logger = logging.getLogger(__name__)

# Fields worth capturing whenever the user volunteers them, whatever the stage.
MEMORY_FIELDS = (
    "email",
    "phone",
    "first_name",
    "last_name",
    "business_registration_id",
    "regNum",
    "entity_tax_id",
    "entity_name",
    "organization_name",
)

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}")
ID_RUN_PATTERN = re.compile(r"(?<!\d)\d{8,9}(?!\d)")
MOBILE_PATTERN = re.compile(r"(?<![\d+])(?:\+?972[-\s]?0?|0)?5\d(?:[-\s]?\d){7}(?!\d)")


def extraction_scope(flow: FlowDefinition, stage: Optional[StageDefinition]) -> Dict[str, FieldDefinition]:
    """Field definitions the extractor may fill for this turn, stage fields first."""
    definitions = flow.field_definitions
    slugs = list(stage.fields_to_collect) if stage else []
    slugs += [slug for slug in MEMORY_FIELDS if slug in definitions and slug not in slugs]
    return {slug: definitions[slug] for slug in slugs if slug in definitions}


def find_email(message: str) -> Optional[str]:
    match = EMAIL_PATTERN.search(message or "")
    return match.group(0) if match else None


def find_mobile(message: str) -> Optional[str]:
    for match in MOBILE_PATTERN.finditer(message or ""):
        mobile = normalize_israeli_mobile(match.group(0))
        if mobile:
            return mobile
    return None


def find_checked_id(message: str) -> Optional[str]:
    """The first 8-9 digit run that passes the id check digit, padded to 9 digits."""
    for match in ID_RUN_PATTERN.finditer(message or ""):
        digits = match.group(0)
        if digits.startswith("05"):
            continue
        id9 = digits.zfill(9)
        if is_valid_id_checksum(id9):
            return id9
    return None


def deterministic_extract(message: str, scope: Dict[str, FieldDefinition]) -> Dict[str, Any]:
    found: Dict[str, Any] = {}
    email = find_email(message)
    mobile = find_mobile(message)
    checked_id = find_checked_id(message)
    for slug, definition in scope.items():
        if email and looks_like_email_field(slug, definition):
            found[slug] = email
        elif mobile and looks_like_mobile_field(slug, definition):
            found[slug] = mobile
        elif checked_id and (
            looks_like_national_id_field(slug, definition) or looks_like_registration_id_field(slug, definition)
        ):
            found[slug] = checked_id
    return found


async def collect_field_values(
    extractor,
    message: str,
    flow: FlowDefinition,
    stage: Optional[StageDefinition],
) -> Dict[str, Any]:
    """
    Ask the extractor for in-scope values, then add deterministic matches for
    fields it left empty. Extractor failures degrade to the deterministic pass.
    """
    scope = extraction_scope(flow, stage)
    if not scope or not (message or "").strip():
        return {}

    extracted: Dict[str, Any] = {}
    if extractor is not None:
        try:
            raw = await extractor.extract_fields(
                message,
                scope,
                {"flow": flow.slug, "stage_description": stage.description if stage else ""},
            )
            extracted = {slug: value for slug, value in (raw or {}).items() if slug in scope}
        except Exception as e:
            logger.error(f"Field extraction failed, using pattern matching only: {e}", exc_info=True)

    for slug, value in deterministic_extract(message, scope).items():
        if not is_present(extracted.get(slug)):
            extracted[slug] = value
    return extracted
