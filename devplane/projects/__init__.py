"""Projects and their prebuild settings."""
