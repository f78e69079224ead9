"""
Utility functions module.

Time Semantics:
- All control plane timestamps are timezone-aware UTC datetimes
- Components take an injectable clock so staleness and deploy timeouts
  can be driven deterministically in tests and simulations
"""
