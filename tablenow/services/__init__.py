"""Collaborators used by the reservation engine."""
