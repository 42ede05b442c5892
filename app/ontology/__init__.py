"""Ontology domain services.

Every function takes an ``AsyncSession`` and an explicit ontology id; none
of them commit. Callers (governance surface, pipeline nodes, API) own the
transaction boundary.
"""
