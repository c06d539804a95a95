"""Embedded store: three keyed collections, secondary indexes, atomic units."""

from .store import CollectionView, EntityStore, StoreTransaction

__all__ = ["CollectionView", "EntityStore", "StoreTransaction"]
