"""Click commands for the vmdeploy CLI."""
