"""Scheduler services."""
