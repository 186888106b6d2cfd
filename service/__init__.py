"""Service layer: the cache-aware fetch pipeline, progress sinks, logging, and time parsing."""
