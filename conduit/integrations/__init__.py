"""Integrations with external AI coding-agent backends."""
