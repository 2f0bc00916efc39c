"""Collaborator interfaces and upstream-call helpers."""
