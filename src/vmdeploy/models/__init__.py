"""Pydantic models for vmdeploy configuration, results and state."""
