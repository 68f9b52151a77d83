"""Reconciliation engine: descriptors, templating, scheduling, observability."""
