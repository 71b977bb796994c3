"""
Per-user call windows and their resolution for a given date.
"""
