"""Compliance by design: rule evaluation, defaults and content assessment."""
