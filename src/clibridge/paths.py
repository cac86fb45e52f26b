from __future__ import annotations

import os
from pathlib import Path


def clibridge_home() -> Path:
    env = os.environ.get("CLIBRIDGE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".clibridge").resolve()
