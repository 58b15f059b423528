"""
Core modules for AI Usage Guard.

This package contains log parsing, cost pricing, delta/efficiency
analytics and alert decisions.
"""
