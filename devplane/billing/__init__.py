"""Usage entitlement checks."""
