"""
One-shot maintenance entry point.
"""
