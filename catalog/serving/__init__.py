"""
Serving Module

HTTP API and caching layer.
"""
