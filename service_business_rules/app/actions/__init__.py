"""
Action parameter models and the ordered, fail-fast action dispatcher.
"""
