"""Users, identities and tokens."""
