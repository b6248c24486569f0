# /app/workflows/definitions.py

"""
Built-in flow definitions.

This module defines flows as pure data (no logic), in the same camelCase JSON
shape the flows API accepts and the store persists. They are validated and
seeded at startup by the flow catalog.

Each flow specifies:
- definition.stages: stage slug -> stage (fields to collect, action, transitions)
- definition.fields: field slug -> field definition
- definition.config: initial stage, default-for-new-users flag, onComplete chaining
"""

from typing import Any, Dict, List

FlowDocument = Dict[str, Any]

WELCOME_FLOW: FlowDocument = {
    "name": "Welcome",
    "slug": "welcome",
    "description": "Entry flow: collect basic contact details and route by intent",
    "version": 1,
    "definition": {
        "stages": {
            "collectBasics": {
                "name": "Collect basics",
                "description": "Collect the user's name and mobile number.",
                "prompt": "Greet the user in one short line and ask for their first name, last name and mobile number.",
                "fieldsToCollect": ["first_name", "last_name", "phone"],
                "nextStage": "intent",
            },
            "intent": {
                "name": "Intent",
                "description": "Find out whether the user wants to register a business or needs support.",
                "prompt": "Ask whether they would like to register their business or need help with an existing account.",
                "fieldsToCollect": ["intent_type"],
                "action": {
                    "toolName": "welcome.route",
                    "condition": "intent_type === 'register'",
                    "onError": {"behavior": "continue"},
                },
                "nextStage": "support",
            },
            "support": {
                "name": "Support",
                "description": "Collect a short description of the support request.",
                "prompt": "Ask what they need help with.",
                "fieldsToCollect": ["support_topic"],
                "nextStage": "supportReceived",
            },
            "supportReceived": {
                "name": "Support received",
                "description": "Confirm that a human agent will follow up.",
                "prompt": "Thank the user and tell them a team member will get back to them.",
                "fieldsToCollect": [],
            },
        },
        "fields": {
            "first_name": {"type": "string", "description": "User's first name", "minLength": 2},
            "last_name": {"type": "string", "description": "User's last name", "minLength": 2},
            "phone": {"type": "string", "description": "User's mobile phone number"},
            "intent_type": {
                "type": "string",
                "description": "What the user wants to do",
                "enum": ["register", "support"],
            },
            "support_topic": {"type": "string", "description": "What the user needs help with", "minLength": 3},
        },
        "config": {
            "initialStage": "collectBasics",
            "defaultForNewUsers": True,
            "isRouterFlow": True,
        },
    },
}

BUSINESS_REGISTRATION_FLOW: FlowDocument = {
    "name": "Business registration",
    "slug": "business_registration",
    "description": "Register a business: contact email, registration number and registry lookup",
    "version": 1,
    "definition": {
        "stages": {
            "collectContact": {
                "name": "Contact",
                "description": "Collect the contact email for the business account.",
                "prompt": "Ask for the best email address to reach them.",
                "fieldsToCollect": ["email"],
                "nextStage": "collectRegistration",
            },
            "collectRegistration": {
                "name": "Registration number",
                "description": "Collect the company registration number.",
                "prompt": "Ask for the company registration number (9 digits).",
                "fieldsToCollect": ["business_registration_id"],
                "nextStage": "lookupRegistry",
            },
            "lookupRegistry": {
                "name": "Registry lookup",
                "description": "Look the business up in the companies registry.",
                "fieldsToCollect": [],
                "action": {
                    "toolName": "lookup.registry",
                    "condition": "present(business_registration_id)",
                    "onErrorCode": {
                        "NOT_FOUND": {
                            "behavior": "continue",
                            "updateUserData": {"registry_match": "False"},
                        },
                    },
                    "onError": {
                        "behavior": "pause",
                        "message": "We couldn't reach the companies registry right now.",
                    },
                },
                "nextStage": {
                    "conditional": [
                        {"condition": "present(entity_name)", "ifTrue": "confirmEntity"},
                    ],
                    "fallback": "collectEntityDetails",
                },
            },
            "collectEntityDetails": {
                "name": "Entity details",
                "description": "The registry had no match; collect the business name and legal entity type.",
                "prompt": "Explain that we couldn't find the business automatically and ask for its name and legal entity type.",
                "fieldsToCollect": ["entity_name", "business_legal_entity_type"],
                "nextStage": "done",
            },
            "confirmEntity": {
                "name": "Confirm entity",
                "description": "Confirm the business details found in the registry.",
                "prompt": "Show the business name found in the registry and ask the user to confirm it is correct.",
                "fieldsToCollect": ["entity_confirmed"],
                "nextStage": {
                    "conditional": [
                        {"condition": "entity_confirmed == True", "ifTrue": "done", "ifFalse": "collectEntityDetails"},
                    ],
                    "fallback": "collectEntityDetails",
                },
            },
            "done": {
                "name": "Done",
                "description": "Registration details are complete.",
                "prompt": "Thank the user and let them know the registration is complete.",
                "fieldsToCollect": [],
            },
        },
        "fields": {
            "email": {"type": "string", "description": "Contact email"},
            "business_registration_id": {"type": "string", "description": "Company registration number"},
            "entity_name": {
                "type": "string",
                "description": "Registered business name",
                "minLength": 2,
                "prohibitedWordsList": "reserved_names_v1",
            },
            "business_legal_entity_type": {
                "type": "string",
                "description": "Legal entity type",
                "enum": [
                    "private_company",
                    "public_company",
                    "partnership",
                    "cooperative",
                    "nonprofit",
                    "authorized_dealer",
                    "exempt_dealer",
                ],
            },
            "entity_confirmed": {"type": "boolean", "description": "User confirmed the registry match"},
            "registry_match": {"type": "boolean", "description": "Whether the registry returned a match"},
        },
        "config": {
            "initialStage": "collectContact",
            "errorHandlingStrategy": {"onUnhandledError": "skip"},
        },
    },
}

BUILT_IN_FLOWS: List[FlowDocument] = [WELCOME_FLOW, BUSINESS_REGISTRATION_FLOW]
