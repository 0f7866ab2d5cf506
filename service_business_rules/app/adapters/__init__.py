"""
HTTP adapters for action sinks.
"""
