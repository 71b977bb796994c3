"""
Reflection session state machine and its persistence.
"""
