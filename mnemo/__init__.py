"""
Mnemo - personal-knowledge cache and retrieval engine.

Layers, leaf first: embedding index, event graph store, semantic clustering,
categorized cache, focus tracking, conversation context.
"""

__version__ = "0.4.0"
