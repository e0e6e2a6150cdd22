# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# All Prometheus metrics for the flow engine live here.

# Engine
node_execution_counter = Counter('flow_node_executions_total', 'Node executions', ['node_type', 'status'])
step_duration_histogram = Histogram('flow_step_duration_seconds', 'Duration of one engine pass', ['mode'])
flow_error_counter = Counter('flow_errors_total', 'Classified flow errors', ['category'])
active_conversations_gauge = Gauge('active_conversations', 'Conversations currently awaiting input')

# Transport
message_counter = Counter('flow_messages_total', 'Outbound messages', ['status', 'message_type'])

# Campaigns
campaign_contacts_counter = Counter('campaign_contacts_total', 'Campaign contacts processed', ['status'])

# Infrastructure
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
lock_operations = Counter('contact_lock_operations_total', 'Per-contact lock operations', ['operation', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])

# Integration nodes
ai_requests_counter = Counter('ai_requests_total', 'AI agent requests', ['model', 'status'])
http_node_requests_counter = Counter('http_node_requests_total', 'Outbound HTTP requests made by flow nodes', ['method', 'status'])
