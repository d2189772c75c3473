"""Permission checks for API callers."""
