"""
Shared plumbing: structured logging, configuration, errors and time helpers.
"""
