"""Entity extraction from object text."""

from iou.extraction.extractor import EntityExtractor
from iou.extraction.gazetteer import GazetteerEntry, default_entries

__all__ = ["EntityExtractor", "GazetteerEntry", "default_entries"]
