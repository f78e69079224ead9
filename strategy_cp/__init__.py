"""
Strategy CP - Strategy Compiler and Control Plane

Compiles declarative trading strategy specs into immutable, content-addressed
execution plans and coordinates their deployment, monitoring and retirement
across a fleet of execution workers.
"""

__version__ = "0.1.0"
__author__ = "Strategy CP Team"
