# config.py
# Runtime settings. Everything is read from the environment; a .env file in
# the working directory is honoured.

import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator


class InvocationMode(str, Enum):
    """How a script and its arguments are handed to the shell.

    ARGV:  `<shell> <script> <token> ...`; values are never re-parsed.
    SHELL: `<shell> -c '"<script>" <flag> "<value>" ...'`; values are only
            wrapped in double quotes, so shell metacharacters inside them are
            interpreted by the shell.
    """

    ARGV = "argv"
    SHELL = "shell"


_ENV_VARS = {
    "shell": "SCRIPTLET_SHELL",
    "invocation": "SCRIPTLET_INVOCATION",
    "data_dir": "SCRIPTLET_DATA_DIR",
    "log_level": "SCRIPTLET_LOG_LEVEL",
    "term": "SCRIPTLET_TERM",
}


class Settings(BaseModel):
    shell: str = Field(default="/bin/bash", description="Interpreter used for every run.")
    invocation: InvocationMode = InvocationMode.ARGV
    data_dir: Path = Field(default=Path("~/.scriptlet_runner"))
    log_level: str = "WARNING"
    term: str = Field(default="xterm-256color", description="Forced TERM for child processes.")

    @field_validator("data_dir", mode="after")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level", mode="after")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @property
    def store_path(self) -> Path:
        return self.data_dir / "store.json"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(find_dotenv(usecwd=True))
        values = {
            field: os.environ[var] for field, var in _ENV_VARS.items() if os.environ.get(var)
        }
        return cls.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
