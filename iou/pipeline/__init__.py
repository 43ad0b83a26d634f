"""Per-object pipeline, worker pool, audit sink and the service facade."""
