"""
Core Module
===========

Shared utilities: configuration, error taxonomy, retry policy, metrics.
"""
