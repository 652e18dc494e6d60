"""Scheduler job support."""
