"""Relay core: sessions, validation, RBAC, rate limiting, stream routing, metrics, MQTT presence and health endpoints."""

__version__ = "1.0.0rc1"