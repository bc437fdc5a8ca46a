"""
Core modules for aura-guard.

This package contains the governance pipeline: call budgets, response
caching, query validation, input and output sanitization, guarded web-data
lookups, conversation memory, the reply budget and usage monitoring.
"""
