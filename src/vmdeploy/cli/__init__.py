"""Command-line interface for vmdeploy."""
