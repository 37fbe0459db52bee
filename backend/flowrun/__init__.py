"""
FlowRun - Step advancement engine for no-code workflows

Evaluates branch and skip conditions, materializes branch paths, advances
runs step by step, converges parallel branches and completes group steps.
"""
__version__ = "0.1.0"
