"""Upstream transports used for forwarding."""
