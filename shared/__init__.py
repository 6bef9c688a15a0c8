"""Shared infrastructure for the ensemble learning libraries."""
