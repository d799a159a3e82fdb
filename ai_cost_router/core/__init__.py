"""
Core modules for AI Cost Router.

This package contains the routing, admission, caching, quota and
telemetry functionality.
"""
