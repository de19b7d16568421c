"""Entity registry with optimistic concurrency control."""

from timeweave.entities.service import EntityService

__all__ = ["EntityService"]
