"""Check-in request schemas and result payloads."""
