"""Prebuild triggering, incremental base selection and status upkeep."""
