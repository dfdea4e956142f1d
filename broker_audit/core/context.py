# broker_audit/core/context.py

import contextvars

correlation_id_ctx = contextvars.ContextVar("correlation_id", default=None)
username_ctx = contextvars.ContextVar("username", default=None)
client_ip_ctx = contextvars.ContextVar("client_ip", default=None)
user_agent_ctx = contextvars.ContextVar("user_agent", default=None)
