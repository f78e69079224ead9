"""
Spec ingestion module.

Parses raw strategy spec payloads (JSON, YAML or already-decoded dicts)
into immutable StrategySpec objects.
"""
