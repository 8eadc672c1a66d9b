"""Vitals monitoring and alert lifecycle engine for the clinical dashboard.

Domain models and the engine's services are kept free of network code; the
adapters package holds the REST, WebSocket and local-file boundaries.
"""
