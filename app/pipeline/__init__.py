"""Ontology extraction pipeline.

A fixed, linear sequence of nodes executed by ``DagOrchestrator``:

    schema_capture -> entity_discovery -> entity_enrichment
      -> relationship_discovery -> relationship_enrichment
      -> column_enrichment -> glossary_discovery -> glossary_enrichment
      -> finalization

Discovery nodes are deterministic; enrichment nodes call the generation
capability concurrently and persist sequentially.
"""
