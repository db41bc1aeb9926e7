"""
AI Gen Guard.

Admission control and generation job lifecycle for generative-AI calls.
"""

__version__ = "0.1.0"
