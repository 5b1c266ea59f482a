"""Validation error formatting for pipeline configuration files."""

from pydantic import ValidationError as PydanticValidationError

# Inputs under these top-level keys are never echoed back
MASKED_SECTIONS = frozenset({"credentials"})

# Longest echoed input before it is cut
MAX_INPUT_REPR = 60


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pipeline ValidationError into one message per field.

    Field paths are dotted (``instance.firewall.inbound_ports.0``). Offending
    values from custom validators are echoed, except under ``credentials``.

    Example:
        >>> from pydantic import BaseModel, ValidationError
        >>> class Model(BaseModel):
        ...     port: int
        >>> try:
        ...     Model(port="ssh")
        ... except ValidationError as e:
        ...     msgs = flatten_pydantic_errors(e)
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "config"
        msg = error.get("msg", "Unknown error").removeprefix("Value error, ")

        formatted = f"Field '{field_path}': {msg}"
        input_val = error.get("input")
        if (
            error.get("type") == "value_error"
            and not isinstance(input_val, dict)
            and not (loc and loc[0] in MASKED_SECTIONS)
        ):
            shown = repr(input_val)
            if len(shown) > MAX_INPUT_REPR:
                shown = shown[: MAX_INPUT_REPR - 3] + "..."
            formatted += f" (received: {shown})"
        errors.append(formatted)

    return errors or ["Configuration failed validation"]
