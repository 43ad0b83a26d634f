"""Knowledge graph inference: resolution, relationships, communities."""
