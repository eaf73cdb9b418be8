"""
Shared building blocks: constants, schemas, errors, settings and helpers.
"""
