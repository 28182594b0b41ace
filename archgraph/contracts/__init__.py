"""
Contracts Module

Explicit data types shared by every layer of the dependency graph
backend. Layers exchange these records, never each other's internals.

DESIGN PRINCIPLES:
==================
1. Entity and query contract types are immutable (frozen dataclasses)
2. Every failure carries an explicit ErrorCode
3. Change payloads have exactly one validation point (payloads.parse_payload)
4. All timestamps are UTC and never mutated
5. Relation types are a closed set; legacy names are normalized on input
"""
