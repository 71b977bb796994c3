"""
Read-only operational endpoints.
"""
