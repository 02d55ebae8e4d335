# /chatflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Engine Metrics
inbound_events_counter = Counter('chatflow_inbound_events_total', 'Inbound chat events received', ['channel', 'status'])
node_executions_counter = Counter('chatflow_node_executions_total', 'Node handler executions', ['kind', 'outcome'])
session_transitions_counter = Counter('chatflow_session_transitions_total', 'Session state transitions', ['status'])
engine_step_histogram = Histogram('chatflow_engine_step_seconds', 'Time spent executing a single node', ['kind'])
active_runs_gauge = Gauge('chatflow_active_runs', 'Engine runs currently holding a session lock')

# Deferred Work Metrics
deferred_work_counter = Counter('chatflow_deferred_work_total', 'Deferred work item outcomes', ['kind', 'outcome'])

# Side Effect Metrics
outbound_messages_counter = Counter('chatflow_outbound_messages_total', 'Outbound send requests', ['status'])
external_calls_counter = Counter('chatflow_external_calls_total', 'External calls made by nodes', ['kind', 'outcome'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])

# HTTP Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])

# Performance Metrics
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
