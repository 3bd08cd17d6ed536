"""Secure pipeline telemetry: fleet simulator, WebSocket feed and resilient dashboard client."""

__version__ = "0.1.0"
