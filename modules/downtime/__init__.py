"""Downtime workflow: sheet schema, statistics, delivery and jobs."""
