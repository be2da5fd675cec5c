"""Domain layer: the event envelope, its boundary validator and payload schemas.

Everything here is immutable and transport-agnostic; the bus layer
depends on it but never modifies it.
"""
