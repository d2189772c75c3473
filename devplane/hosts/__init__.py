"""Git host API clients and commit context parsing."""
