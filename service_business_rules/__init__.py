"""
Business Rule Engine service.
"""
