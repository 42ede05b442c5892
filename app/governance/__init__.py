"""Typed success/error surface over the ontology core."""

from app.governance.surface import GovernanceSurface

__all__ = ["GovernanceSurface"]
