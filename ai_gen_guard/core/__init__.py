"""
Core modules for AI Gen Guard.

This package contains the admission gates (rate limiting, budget guard,
response cache) and the generation job lifecycle.
"""
