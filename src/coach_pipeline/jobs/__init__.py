"""Durable SQLite job queue, workers and job handlers."""
