"""Shared utilities for vmdeploy: errors and logging."""
