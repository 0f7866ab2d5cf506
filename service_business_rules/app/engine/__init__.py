"""
Rule execution orchestration.
"""
