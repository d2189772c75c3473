"""Push webhook receivers for the supported git hosts."""
