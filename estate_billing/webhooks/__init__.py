"""Webhook verification, normalization and processing."""
