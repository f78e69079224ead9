"""
Data models and contracts module.

Immutable data structures for strategy specs, compiled execution plans
and compilation diagnostics. Follows functional programming principles
with frozen dataclasses.
"""
