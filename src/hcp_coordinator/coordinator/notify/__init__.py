"""Notification-channel adapters invoked by the routing pipeline."""
