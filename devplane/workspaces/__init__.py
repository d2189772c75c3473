"""Workspaces, their instances and how they are created and started."""
