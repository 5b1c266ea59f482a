"""Configuration loading, validation, and defaults for vmdeploy pipelines.

Main components:
- ConfigLoader: Load and validate vmdeploy.yaml files (``vmdeploy.config.loader``)
- Environment variable substitution (${VAR_NAME} pattern, ``env_loader``)
- Credential resolution from environment variables or files (``credentials``)
- Default values (``defaults``)
"""
