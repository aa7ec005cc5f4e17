"""
Status Relay — statuspage.io incidents relayed to chat webhooks.

Polls (or receives pushes from) status pages and keeps one message per
incident update in every subscribed channel, editing messages in place
as incidents evolve.
"""

__version__ = "1.0.0"
