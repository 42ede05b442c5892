"""Schema collaborator.

Read-only access to the modelled datasource:
  - Schema snapshot types (tables, columns, foreign keys)
  - Connectors that capture a snapshot
  - SQL validators used by the glossary validate-and-retry loop
"""
