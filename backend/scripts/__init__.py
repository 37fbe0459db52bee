"""
Backend Scripts Module

Utility scripts for working with flow definitions.

Available scripts:
    - validate_flow.py: Checks a flow definition JSON file for structural problems

Usage:
    python -m scripts.validate_flow path/to/flow.json
"""
