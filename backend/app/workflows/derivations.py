# /app/workflows/derivations.py

"""
Fields whose value is fully determined by another known field. Deriving them
while persisting lets the flow skip the corresponding question.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from app.models.flow import FieldDefinition
from app.workflows.validator import is_present, is_valid_id_checksum, normalize_id_digits


def legal_entity_type_from_registration_id(registration_id: Any) -> Optional[str]:
    """Map a company registration number prefix to its legal entity type."""
    id9 = normalize_id_digits(registration_id)
    if not id9 or not is_valid_id_checksum(id9):
        return None
    prefix = id9[:2]
    if prefix in ("50", "51", "56"):
        return "private_company"
    if prefix == "52":
        return "public_company"
    if prefix in ("53", "54", "55"):
        return "partnership"
    if prefix == "57":
        return "cooperative"
    if prefix in ("58", "59"):
        return "nonprofit"
    return "authorized_dealer"


# target field -> (source field, derivation)
DERIVATIONS: Dict[str, Tuple[str, Callable[[Any], Optional[str]]]] = {
    "business_legal_entity_type": ("business_registration_id", legal_entity_type_from_registration_id),
}


def derive_fields(
    known: Mapping[str, Any],
    field_definitions: Mapping[str, FieldDefinition],
) -> Dict[str, Any]:
    """
    Return derived values for fields the flow defines and that are still empty.
    A derived value must also be acceptable to the target's enum, if any.
    """
    derived: Dict[str, Any] = {}
    for target, (source, derive) in DERIVATIONS.items():
        definition = field_definitions.get(target)
        if definition is None or is_present(known.get(target)) or not is_present(known.get(source)):
            continue
        value = derive(known[source])
        if value is None:
            continue
        if definition.enum and value not in definition.enum:
            continue
        derived[target] = value
    return derived
