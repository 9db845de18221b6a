"""Career chat shared libraries.

This package contains reusable components:
- common: Settings and structured logging setup
"""
