# scanner.py
# Discovers shell scripts under the configured scan locations.

import logging
import os

from scriptlet_runner.models import ScanLocation, Script
from scriptlet_runner.parser import ScriptParser

logger = logging.getLogger(__name__)

SHEBANGS = (
    "#!/bin/bash",
    "#!/bin/sh",
    "#!/usr/bin/env bash",
    "#!/usr/bin/env sh",
    "#!/bin/zsh",
    "#!/usr/bin/env zsh",
)


def is_shell_script(path: str) -> bool:
    """`.sh` files, or executables whose first bytes are a shell shebang."""
    if path.endswith(".sh"):
        return True
    if not (os.path.isfile(path) and os.access(path, os.X_OK)):
        return False
    try:
        with open(path, "rb") as fh:
            header = fh.read(64)
    except OSError:
        return False
    return header.decode("utf-8", errors="ignore").startswith(SHEBANGS)


class ScriptScanner:
    def __init__(self, parser: ScriptParser | None = None) -> None:
        self._parser = parser or ScriptParser()

    def scan(self, locations: list[ScanLocation]) -> list[Script]:
        """Scripts from every enabled, existing location, sorted by name."""
        scripts: list[Script] = []
        for location in locations:
            if not location.is_enabled:
                continue
            if not location.exists:
                logger.info("Skipping missing scan location %s", location.path)
                continue
            scripts.extend(self.scan_directory(location.path, location.recursive))
        return sorted(scripts, key=lambda script: script.name.casefold())

    def scan_directory(self, directory: str, recursive: bool = True) -> list[Script]:
        scripts: list[Script] = []
        for root, dirs, files in os.walk(directory):
            # Hidden directories are pruned in place so os.walk never enters them.
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for filename in sorted(files):
                if filename.startswith("."):
                    continue
                path = os.path.abspath(os.path.join(root, filename))
                if is_shell_script(path):
                    scripts.append(self._parser.parse(path))
            if not recursive:
                break
        logger.debug("Found %d script(s) under %s", len(scripts), directory)
        return scripts
