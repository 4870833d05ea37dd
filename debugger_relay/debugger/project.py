"""Read project settings needed by the relay."""

import json
from pathlib import Path

from ..log_config import get_logger

log = get_logger("project")


def get_react_native_version(project_root: str | Path) -> str | None:
    """Return the React Native version used by the project at project_root.

    The installed package wins over the caret/tilde range declared in package.json.
    """
    root = Path(project_root)
    installed = root / "node_modules" / "react-native" / "package.json"
    if installed.exists():
        try:
            version = json.loads(installed.read_text(encoding="utf-8")).get("version")
            if version:
                return str(version)
        except (OSError, json.JSONDecodeError) as e:
            log.warn("project.version_read_error", path=str(installed), exc=e)

    manifest = root / "package.json"
    if not manifest.exists():
        return None
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.warn("project.version_read_error", path=str(manifest), exc=e)
        return None

    for section in ("dependencies", "devDependencies"):
        declared = (data.get(section) or {}).get("react-native")
        if declared:
            return str(declared).lstrip("^~=v ")
    return None
