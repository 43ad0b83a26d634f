"""IOU engine: compliance by design and knowledge graph inference."""

__version__ = "0.1.0"
