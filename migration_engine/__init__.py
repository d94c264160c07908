"""
Data migration engine.

Imports bulk exports from external hotline and case-management systems into a
pluggable target schema: analyze, map, transform, validate, execute and roll
back, one job at a time per file.
"""
