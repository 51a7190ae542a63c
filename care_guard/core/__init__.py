"""
Core modules for Care Guard.

This package contains rate limiting, response caching, cost tracking,
consent, audited data access and service orchestration.
"""
