# /app/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Flow Engine Metrics
message_counter = Counter('flow_messages_total', 'Inbound messages processed by the flow engine', ['status'])
stage_transition_counter = Counter('flow_stage_transitions_total', 'Stage transitions', ['kind'])
tool_execution_counter = Counter('flow_tool_executions_total', 'Tool executions', ['tool', 'status'])
expression_errors_counter = Counter('flow_expression_errors_total', 'Flow expressions that failed to evaluate')
field_validation_counter = Counter('flow_field_validations_total', 'Collected field validations', ['status'])

# AI & Storage Metrics
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['operation', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
