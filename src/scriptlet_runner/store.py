# store.py
# Key/value blob persistence for scan locations, chains, run history,
# script icons and preferences. One JSON document on disk; every write
# replaces it atomically.

import json
import logging
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from scriptlet_runner.arguments import history_strings
from scriptlet_runner.models import RunHistoryEntry, ScanLocation, Script, ScriptArgument, ScriptChain

logger = logging.getLogger(__name__)

SCAN_LOCATIONS = "scan_locations"
SAVED_CHAINS = "saved_chains"
RUN_HISTORY = "run_history"
SCRIPT_ICONS = "script_icons"
PREFERENCES = "preferences"

MAX_HISTORY_ENTRIES = 50

_LOCATIONS = TypeAdapter(list[ScanLocation])
_CHAINS = TypeAdapter(list[ScriptChain])
_HISTORY = TypeAdapter(list[RunHistoryEntry])
_ICONS = TypeAdapter(dict[str, str])


class StoreError(Exception):
    """Raised in strict mode when a persisted blob cannot be read back."""


class AppearanceMode(str, Enum):
    SYSTEM = "system"
    LIGHT = "light"
    DARK = "dark"


class Preferences(BaseModel):
    clear_console_on_run: bool = True
    appearance_mode: AppearanceMode = AppearanceMode.SYSTEM


_PREFERENCES = TypeAdapter(Preferences)


class Store:
    """
    JSON-file backed blob store.

    Unreadable or invalid blobs fall back to their defaults with a warning,
    unless the store is strict, in which case StoreError is raised.
    """

    def __init__(self, path: str | Path, strict: bool = False) -> None:
        self.path = Path(path)
        self.strict = strict

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            return self._corrupt(f"Cannot read store {self.path}: {exc}", {})
        if not isinstance(data, dict):
            return self._corrupt(f"Store {self.path} does not hold an object.", {})
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    def _corrupt(self, message: str, default: Any) -> Any:
        if self.strict:
            raise StoreError(message)
        logger.warning("%s Using defaults.", message)
        return default

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._write(data)

    def read_blob(self, key: str, adapter: TypeAdapter, default: Any) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return adapter.validate_python(raw)
        except ValidationError as exc:
            return self._corrupt(f"Invalid '{key}' blob: {exc.error_count()} error(s).", default)

    def write_blob(self, key: str, adapter: TypeAdapter, value: Any) -> None:
        self.set(key, adapter.dump_python(value, mode="json"))

    # ------------------------------------------------------------------
    # Scan locations
    # ------------------------------------------------------------------

    def scan_locations(self) -> list[ScanLocation]:
        return self.read_blob(SCAN_LOCATIONS, _LOCATIONS, [])

    def save_scan_locations(self, locations: list[ScanLocation]) -> None:
        self.write_blob(SCAN_LOCATIONS, _LOCATIONS, locations)

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def chains(self) -> list[ScriptChain]:
        return self.read_blob(SAVED_CHAINS, _CHAINS, [])

    def save_chains(self, chains: list[ScriptChain]) -> None:
        self.write_blob(SAVED_CHAINS, _CHAINS, chains)

    def mark_chain_run(self, chain_id: str, when: datetime | None = None) -> None:
        chains = self.chains()
        for chain in chains:
            if chain.id == chain_id:
                chain.last_run_at = when or datetime.now()
        self.save_chains(chains)

    # ------------------------------------------------------------------
    # Icons and preferences
    # ------------------------------------------------------------------

    def icons(self) -> dict[str, str]:
        return self.read_blob(SCRIPT_ICONS, _ICONS, {})

    def set_icon(self, script_path: str, icon: str | None) -> None:
        icons = self.icons()
        if icon is None:
            icons.pop(script_path, None)
        else:
            icons[script_path] = icon
        self.write_blob(SCRIPT_ICONS, _ICONS, icons)

    def preferences(self) -> Preferences:
        return self.read_blob(PREFERENCES, _PREFERENCES, Preferences())

    def save_preferences(self, preferences: Preferences) -> None:
        self.write_blob(PREFERENCES, _PREFERENCES, preferences)


class RunHistory:
    """Most-recent-first log of single script runs, capped at `max_entries`."""

    def __init__(self, store: Store, max_entries: int = MAX_HISTORY_ENTRIES) -> None:
        self._store = store
        self._max_entries = max_entries

    def entries(self) -> list[RunHistoryEntry]:
        return self._store.read_blob(RUN_HISTORY, _HISTORY, [])

    def _save(self, entries: list[RunHistoryEntry]) -> None:
        self._store.write_blob(RUN_HISTORY, _HISTORY, entries[: self._max_entries])

    def add_entry(
        self,
        script: Script,
        arguments: list[ScriptArgument],
        exit_code: int | None = None,
    ) -> RunHistoryEntry:
        entry = RunHistoryEntry(
            script_path=script.path,
            script_name=script.display_name,
            exit_code=exit_code,
            arguments=history_strings(arguments),
        )
        self._save([entry, *self.entries()])
        return entry

    def update_last_exit_code(self, exit_code: int) -> None:
        entries = self.entries()
        if not entries:
            return
        entries[0] = entries[0].model_copy(update={"exit_code": exit_code})
        self._save(entries)

    def clear(self) -> None:
        self._store.remove(RUN_HISTORY)
