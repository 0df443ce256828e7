"""
Core infrastructure: configuration, errors, engines and observability.
"""
