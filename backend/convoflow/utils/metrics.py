# /convoflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the service live here.

# Flow engine
flow_executions_counter = Counter('flow_executions_total', 'Flow engine invocations', ['outcome'])
flow_nodes_counter = Counter('flow_nodes_executed_total', 'Flow nodes executed', ['node_type'])
flow_actions_counter = Counter('flow_actions_total', 'Action node side effects', ['action_type', 'status'])
flow_triggers_counter = Counter('flow_triggers_total', 'Trigger resolutions', ['trigger', 'matched'])

# Messaging
outbound_messages_counter = Counter('outbound_messages_total', 'Outbound channel messages', ['message_type', 'status'])
inbound_messages_counter = Counter('inbound_messages_total', 'Inbound webhook messages', ['message_type'])

# HTTP
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
