"""
Core domain models, geometry, mathematical primitives, and invariants.

This module contains the foundational building blocks that are independent
of external systems (databases, payment gateway, transport).
"""
