"""Validation helpers for workspace paths and captured program output.

Workspace paths are keys into an in-memory file map and later become module
names and file names inside a sandbox, so they must stay relative and must
not climb out of the workspace root.
"""

import re

# Control characters other than tab, newline and carriage return.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def validate_workspace_path(path: str) -> tuple[bool, str, str]:
    """Validate and normalize a workspace-relative file path.

    Backslashes are converted to forward slashes and ``.`` components are
    dropped. Names that merely contain ``..`` (``notes..bak``) are allowed;
    a ``..`` component is not.

    Args:
        path: The path supplied by a caller or an agent.

    Returns:
        A tuple of (is_valid, error_message, normalized_path).
        If invalid, normalized_path is an empty string.

    Examples:
        >>> validate_workspace_path("pkg\\\\util.py")
        (True, "", "pkg/util.py")
        >>> validate_workspace_path("../secrets.py")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_workspace_path("/etc/passwd")
        (False, "Absolute paths not allowed", "")
    """
    if not path or not path.strip():
        return False, "Path cannot be empty", ""

    if "\x00" in path:
        return False, "Path contains null byte", ""

    unified = path.strip().replace("\\", "/")
    if unified.startswith("/") or re.match(r"^[A-Za-z]:/", unified):
        return False, "Absolute paths not allowed", ""

    components = [part for part in unified.split("/") if part not in ("", ".")]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""
    if not components:
        return False, "Path cannot be empty", ""

    return True, "", "/".join(components)


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Sanitize program output for safe transmission.

    Removes control characters that break JSON consumers and truncates
    excessively long output with a marker noting how much was dropped.

    Args:
        output: The raw output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = _CONTROL_CHARS.sub("", output)

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
