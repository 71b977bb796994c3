"""
Answer interpretation helpers used during a live call.
"""
