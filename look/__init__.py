"""Look marketplace backend."""
