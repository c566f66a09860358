"""
Test suite for the territory allocation engine

Contains:
- tests/unit/          : Unit tests for pure modules (geometry, pricing, lifecycle)
- tests/integration/   : SQLite-backed tests for Preview / Reserve / lifecycle
"""
