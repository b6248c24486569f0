# /app/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.

TECHNICAL_ERROR_REPLY = (
    "Sorry, something went wrong on our side while handling your request. "
    "Your details are saved."
)

RETRY_HINT = 'If you\'d like to try again, just say "try again" or "retry".'

PREVIOUS_ATTEMPT_FAILED = 'The previous attempt failed. Say "retry" to try again.'

EMPTY_REPLY_FALLBACK = "I'm processing your request. Please continue."

NO_FLOW_CONFIGURED = "Sorry, I can't help with that right now. Please try again later."

FLOW_ENDED = "Thanks! We're all done here."

# Template replies used when no AI composer is configured.
ASK_FOR_FIELDS_TEMPLATE = "To continue, please share: {fields}."

INVALID_FIELD_TEMPLATE = "The value you gave for {field} doesn't look right."

INVALID_FIELD_SUGGESTION_TEMPLATE = 'Did you mean "{suggestion}"?'

STAGE_DONE_TEMPLATE = "Thanks, got it. {description}"

MASKED_VALUE = "••••••••"
