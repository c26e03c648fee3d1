from prometheus_client import Counter, Gauge

MESSAGES_SENT = Counter('chat_messages_sent_total', 'Messages persisted', ['media_type'])
CONVERSATIONS_CREATED = Counter('chat_private_conversations_created_total', 'Private conversations created')
REALTIME_EVENTS = Counter('chat_realtime_events_total', 'Change events published', ['table', 'operation'])
ACTIVE_SUBSCRIPTIONS = Gauge('chat_realtime_subscriptions', 'Live change feed subscriptions')
UPLOAD_FAILURES = Counter('chat_upload_failures_total', 'Attachment uploads that failed', ['bucket'])
