from codeforge.errors import InvalidPathError


WORKSPACE_ROOT = "/home/user"
ALLOWED_ROOTS: tuple[str, ...] = (WORKSPACE_ROOT, ".")
MAX_PATH_BYTES = 4096


def _rejection_reason(path: object) -> str | None:
    if not isinstance(path, str):
        return "not a string"
    candidate = path.strip()
    if not candidate:
        return "empty"
    if len(candidate.encode("utf-8")) > MAX_PATH_BYTES:
        return f"longer than {MAX_PATH_BYTES} bytes"
    if ".." in candidate:
        return "parent traversal"
    if any(ch in candidate for ch in ("\0", "\n", "\r")):
        return "control character"
    if candidate.startswith("/"):
        inside = any(
            candidate == root or candidate.startswith(f"{root}/")
            for root in ALLOWED_ROOTS
            if root.startswith("/")
        )
        if not inside:
            return "outside workspace"
    return None


def is_valid_file_path(path: object) -> bool:
    """Return True if the path is safe to hand to an execution environment."""
    return _rejection_reason(path) is None


def validate_path(path: object) -> str:
    """Validate a path and return it stripped of surrounding whitespace.

    Raises:
        InvalidPathError: when the path is empty, too long, contains ``..``,
            a NUL/CR/LF character, or is absolute outside the allowed roots.
    """
    reason = _rejection_reason(path)
    if reason is not None:
        raise InvalidPathError(path, reason)
    return str(path).strip()


def normalize_workspace_path(path: str, root: str = WORKSPACE_ROOT) -> str:
    """Validate and convert a path into one relative to the workspace root."""
    p = validate_path(path)
    if p == root:
        return ""
    if p.startswith(f"{root}/"):
        p = p[len(root) + 1 :]
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def absolute_workspace_path(path: str, root: str = WORKSPACE_ROOT) -> str:
    rel = normalize_workspace_path(path, root)
    return f"{root}/{rel}" if rel else root
