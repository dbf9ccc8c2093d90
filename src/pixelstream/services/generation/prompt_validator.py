"""Prompt validation for media generation.

Validates text prompts before they are stored on a batch job template.
"""

MAX_PROMPT_LENGTH = 2000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for media generation.

    Args:
        prompt: Text prompt from the user

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        ValueError: If prompt is empty, blank, or exceeds MAX_PROMPT_LENGTH characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    if not prompt.strip():
        raise ValueError("Prompt cannot be blank")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt
