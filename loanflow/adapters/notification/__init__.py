"""Notification adapters for telling investors a loan is fully funded.

Implementations support multiple output channels:
- Stdout (terminal pretty-print)
- Markdown file (append to a daily report)
- Webhook (JSON POST to an external endpoint)
- Null (discard; for deployments without a channel)
"""
