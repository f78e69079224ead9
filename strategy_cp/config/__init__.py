"""
Configuration module.

Typed defaults, YAML overrides and validation for the compiler,
control plane and worker fleet.
"""
