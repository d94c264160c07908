"""
Import pipeline for migration jobs.

Stages run strictly in order per job (analyze, map, transform, validate,
execute, optional rollback); ``service.ImportService`` is the entry point
that wires them together.
"""
