"""
Live call orchestration: prompt playback, answer capture and finalization.
"""
