"""Location validation: local paths confined to the storage root, rclone remotes."""

from __future__ import annotations

import os
import re
from pathlib import Path

_REMOTE_SPEC = re.compile(r"^(?P<name>[A-Za-z0-9_][A-Za-z0-9_-]*):(?P<path>.*)$")
_UNSAFE_CHARS = re.compile(r"[;|&$`\\<>(){}!#\n\r\x00]")


class PathValidator:
    """Checks that job locations stay inside one allowed root."""

    def __init__(self, allowed_root: Path) -> None:
        self.allowed_root = Path(os.path.realpath(allowed_root))

    def resolve(self, path: str) -> Path:
        """Canonical absolute form; symlinks in existing prefixes are followed."""

        return Path(os.path.realpath(path))

    def validate(self, path: object) -> bool:
        """True when ``path`` resolves strictly below the allowed root."""

        if not isinstance(path, str) or not path.strip() or "\x00" in path:
            return False
        if not os.path.isabs(path):
            return False
        try:
            resolved = self.resolve(path)
        except (OSError, ValueError):
            return False
        return resolved != self.allowed_root and resolved.is_relative_to(self.allowed_root)

    def validate_remote(self, spec: object) -> bool:
        """True for an rclone ``remote:path`` spec free of shell metacharacters."""

        if not isinstance(spec, str) or not spec:
            return False
        if _UNSAFE_CHARS.search(spec):
            return False
        return _REMOTE_SPEC.match(spec) is not None

    def validate_location(self, value: object, *, allow_remote: bool) -> bool:
        if allow_remote and is_remote_spec(value):
            return self.validate_remote(value)
        return self.validate(value)


def is_remote_spec(value: object) -> bool:
    """Remote specs look like ``name:path`` and never start with a slash."""

    return isinstance(value, str) and not value.startswith("/") and (
        _REMOTE_SPEC.match(value) is not None
    )
