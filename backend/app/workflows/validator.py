# /app/workflows/validator.py

"""
Pure validation functions for collected field values.

This module checks a single raw value against its FieldDefinition and returns
the normalized value to store, or a typed failure with an optional
human-readable suggestion.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Total (invalid input yields a failure result, never an exception)
- No database access
- No AI calls
- No logging
"""

import re
from functools import lru_cache
from typing import Any, Optional, Tuple, TypedDict

from email_validator import EmailNotValidError, validate_email
from rapidfuzz.distance import Levenshtein

from app.models.flow import FieldDefinition
from app.workflows.prohibited_words import find_prohibited_word


PLACEHOLDER_VALUES = frozenset({"null", ":null", "undefined", ":undefined"})

TRUE_WORDS = frozenset({"true", "yes", "y", "1", "כן"})
FALSE_WORDS = frozenset({"false", "no", "n", "0", "לא"})

UNKNOWN_ANSWERS = frozenset({"unknown", "dont know", "don't know", "not sure", "לא ידוע", "לא יודע", "לא יודעת"})
NO_ANSWERS = frozenset({"no", "none", "nope", "אין", "לא", "ללא"})

TLD_TYPOS: Tuple[Tuple[str, str], ...] = (
    (".con", ".com"),
    (".cmo", ".com"),
    (".comm", ".com"),
    (".coom", ".com"),
    (".cm", ".com"),
)

COMMON_EMAIL_DOMAINS: Tuple[str, ...] = (
    "gmail.com",
    "googlemail.com",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "icloud.com",
    "yahoo.com",
    "yahoo.co.il",
    "walla.co.il",
    "bezeqint.net",
    "012.net.il",
    "netvision.net.il",
)

UNKNOWN_ZIP = "unknown"


class FieldValidationResult(TypedDict):
    """Result of validating one field value."""
    is_valid: bool
    normalized_value: Any
    error_code: Optional[str]
    suggestion: Optional[str]


def _ok(value: Any) -> FieldValidationResult:
    return {"is_valid": True, "normalized_value": value, "error_code": None, "suggestion": None}


def _fail(value: Any, error_code: str, suggestion: Optional[str] = None) -> FieldValidationResult:
    return {"is_valid": False, "normalized_value": value, "error_code": error_code, "suggestion": suggestion}


def is_present(value: Any) -> bool:
    """
    A value is present when it is not empty and not a placeholder sentinel.
    Boolean False is a valid answer and counts as present.
    """
    if value is None:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return False
        return stripped.lower() not in PLACEHOLDER_VALUES
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


# ==================== Field kinds ====================

def _slug(field_slug: str) -> str:
    return (field_slug or "").strip().lower()


def looks_like_email_field(field_slug: str, definition: FieldDefinition) -> bool:
    if "email" in _slug(field_slug):
        return True
    return bool(re.search(r"\be-?mail\b|אימייל|דואר\s*אלקטרוני", definition.description or "", re.IGNORECASE))


def looks_like_mobile_field(field_slug: str, definition: FieldDefinition) -> bool:
    slug = _slug(field_slug)
    if slug in ("phone", "mobile_phone", "user_mobile_phone", "user_phone", "proposer_mobile_phone"):
        return True
    return bool(re.search(r"\bmobile\b|טלפון\s*נייד|נייד", definition.description or "", re.IGNORECASE))


def looks_like_national_id_field(field_slug: str, definition: FieldDefinition) -> bool:
    slug = _slug(field_slug)
    if slug in ("user_id_number", "legal_id", "id_number", "national_id", "tz"):
        return True
    if re.search(r"(^|_)(tz|teudat|zehut)(_|$)", slug):
        return True
    return bool(re.search(r"national id|תעודת\s*זהות|מספר\s*זהות", definition.description or "", re.IGNORECASE))


def looks_like_registration_id_field(field_slug: str, definition: FieldDefinition) -> bool:
    slug = _slug(field_slug)
    if slug in ("business_registration_id", "regnum"):
        return True
    description = definition.description or ""
    if slug == "entity_tax_id":
        # Tax ids may be foreign (e.g. US EIN); only treat as local when described so.
        return bool(re.search(r"ח[\"״׳']?פ|ע[\"״׳']?מ|registration number", description, re.IGNORECASE))
    return bool(re.search(r"ח[\"״׳']?פ|ע[\"״׳']?מ|company registration|company id", description, re.IGNORECASE))


# ==================== Domain normalizers ====================

def normalize_israeli_mobile(raw: Any) -> Optional[str]:
    digits = re.sub(r"\D", "", str(raw or ""))
    if re.fullmatch(r"5\d{8}", digits):
        return f"0{digits}"
    if re.fullmatch(r"05\d{8}", digits):
        return digits
    if re.fullmatch(r"9725\d{8}", digits):
        return f"0{digits[3:]}"
    if re.fullmatch(r"97205\d{8}", digits):
        return f"0{digits[4:]}"
    return None


def normalize_id_digits(raw: Any) -> Optional[str]:
    digits = re.sub(r"\D", "", str(raw or ""))
    if not digits or len(digits) > 9:
        return None
    return digits.zfill(9)


def is_valid_id_checksum(id9: str) -> bool:
    """Check digit used by national ids and business registration numbers."""
    if not re.fullmatch(r"\d{9}", id9 or ""):
        return False
    total = 0
    for index, char in enumerate(id9):
        n = int(char) * (1 if index % 2 == 0 else 2)
        total += n // 10 + n % 10 if n > 9 else n
    return total % 10 == 0


def _split_email(raw: str) -> Optional[Tuple[str, str]]:
    at = raw.rfind("@")
    if at <= 0 or at >= len(raw) - 1:
        return None
    return raw[:at], raw[at + 1:]


def suggest_email_correction(raw: str) -> Optional[str]:
    """Suggest the likely intended address for a near-miss domain, or None."""
    parts = _split_email((raw or "").strip())
    if not parts:
        return None
    local, domain = parts[0].strip(), parts[1].strip().lower()
    if not local or not domain:
        return None

    for typo, replacement in TLD_TYPOS:
        if domain.endswith(typo):
            suggested = f"{local}@{domain[: -len(typo)]}{replacement}"
            return suggested if suggested != raw.strip() else None

    domain = domain.rstrip(".")
    if not domain:
        return None
    best: Optional[Tuple[str, int]] = None
    for candidate in COMMON_EMAIL_DOMAINS:
        distance = Levenshtein.distance(domain, candidate)
        if distance == 0:
            return None
        if distance <= 2 and (best is None or distance < best[1]):
            best = (candidate, distance)
    return f"{local}@{best[0]}" if best else None


def validate_email_value(raw: str) -> FieldValidationResult:
    parts = _split_email(raw.strip())
    normalized = f"{parts[0]}@{parts[1].lower()}" if parts else raw.strip()
    suggestion = suggest_email_correction(raw)
    try:
        validate_email(normalized, check_deliverability=False)
    except EmailNotValidError:
        return _fail(raw, "email_invalid", suggestion)
    if suggestion:
        return _fail(raw, "email_typo_suspected", suggestion)
    return _ok(normalized)


def _normalize_token(text: str) -> str:
    token = re.sub(r"[“”\"׳״'’]", "", text.strip().lower())
    token = re.sub(r"\s+", " ", token)
    return token.strip(" .,;:!?-()[]{}")


# ==================== Coercion ====================

def _coerce(definition: FieldDefinition, value: Any) -> Tuple[bool, Any]:
    if definition.type == "boolean":
        if isinstance(value, bool):
            return True, value
        token = _normalize_token(str(value))
        if token in TRUE_WORDS:
            return True, True
        if token in FALSE_WORDS:
            return True, False
        return False, value

    if definition.type == "number":
        if isinstance(value, bool):
            return False, value
        if isinstance(value, (int, float)):
            return True, value
        text = str(value).strip().replace(",", "").replace(" ", "")
        try:
            number = float(text)
        except ValueError:
            return False, value
        return True, int(number) if number.is_integer() else number

    if isinstance(value, (dict, list)):
        return False, value
    return True, str(value).strip()


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _match_enum(options, value: str) -> Optional[str]:
    if value in options:
        return value
    folded = value.casefold()
    for option in options:
        if option.casefold() == folded:
            return option
    return None


# ==================== Entry point ====================

def validate_field_value(field_slug: str, definition: Optional[FieldDefinition], raw_value: Any) -> FieldValidationResult:
    """
    Validate and normalize one collected value.

    Args:
        field_slug: The field's slug (also used to detect domain-specific kinds)
        definition: The field's definition; None means the value is accepted as-is
        raw_value: The value extracted from the user's message or a tool

    Returns:
        FieldValidationResult with the normalized value, or a failure with an
        error_code and an optional suggestion
    """
    if not is_present(raw_value):
        return _fail(raw_value, "missing")
    if definition is None:
        return _ok(raw_value)

    coerced, value = _coerce(definition, raw_value)
    if not coerced:
        return _fail(raw_value, f"not_a_{definition.type}")
    if definition.type != "string":
        if definition.enum and str(value) not in definition.enum:
            return _fail(raw_value, "enum")
        return _ok(value)

    slug = _slug(field_slug)
    text: str = value

    if slug == "business_zip":
        token = _normalize_token(text)
        digits = re.sub(r"\D", "", text)
        if token in UNKNOWN_ANSWERS or (digits and set(digits) == {"0"}):
            return _ok(UNKNOWN_ZIP)
        if len(digits) in (5, 7) and digits[0] != "0":
            return _ok(digits)
        return _fail(raw_value, "zip_invalid", 'Please enter a 5 or 7 digit zip code, or say "unknown".')

    if slug == "business_po_box":
        if raw_value is False:
            return _ok(False)
        token = _normalize_token(text)
        if token in NO_ANSWERS or token.startswith("אין ") or token.startswith("no "):
            return _ok(False)
        digits = re.sub(r"\D", "", text)
        if digits and len(digits) <= 7:
            return _ok(digits)
        return _fail(raw_value, "po_box_invalid", 'Enter the PO box number (up to 7 digits), or say "none".')

    if looks_like_email_field(field_slug, definition):
        result = validate_email_value(text)
        if not result["is_valid"]:
            return result
        text = result["normalized_value"]

    if looks_like_mobile_field(field_slug, definition):
        mobile = normalize_israeli_mobile(text)
        if not mobile:
            return _fail(raw_value, "mobile_invalid")
        text = mobile

    if looks_like_national_id_field(field_slug, definition):
        id9 = normalize_id_digits(text)
        if not id9 or not is_valid_id_checksum(id9):
            return _fail(raw_value, "national_id_invalid")
        text = id9

    if looks_like_registration_id_field(field_slug, definition):
        id9 = normalize_id_digits(text)
        if not id9 or not is_valid_id_checksum(id9):
            return _fail(raw_value, "registration_id_invalid")
        text = id9

    if definition.prohibited_words_list and find_prohibited_word(text, definition.prohibited_words_list):
        return _fail(raw_value, "prohibited_word")

    if definition.min_length is not None and len(text) < definition.min_length:
        return _fail(raw_value, "min_length")
    if definition.max_length is not None and len(text) > definition.max_length:
        return _fail(raw_value, "max_length")

    if definition.enum:
        matched = _match_enum(definition.enum, text)
        if matched is None:
            return _fail(raw_value, "enum", "Choose one of: " + ", ".join(definition.enum))
        text = matched

    if definition.pattern and definition.pattern.strip():
        compiled = _compile(definition.pattern.strip())
        if compiled is not None and not compiled.search(text):
            return _fail(raw_value, "pattern")

    return _ok(text)


def is_present_and_valid(field_slug: str, definition: Optional[FieldDefinition], value: Any) -> bool:
    return is_present(value) and validate_field_value(field_slug, definition, value)["is_valid"]
