# parser.py
# Comment-header parser: turns the leading comment block of a shell script
# into a Script with description, usage and declared arguments.
#
# Recognised header layout:
#
#   #!/bin/bash
#   # Description: Deploy the site
#   # Usage: deploy.sh [options] <target>
#   # Options:
#   #   -v, --verbose         Print every command
#   #   -o, --output=FILE     Write the log to FILE
#   # Arguments:
#   #   <target>              Host to deploy to
#   # Choices:
#   #   --mode  fast|safe     Deployment strategy
#
# The scan stops at the first line that is neither a comment nor blank.

import logging
import re
import uuid
from enum import Enum

from scriptlet_runner.models import Script, ScriptArgument

logger = logging.getLogger(__name__)

_SHORT_FLAG = re.compile(r"^-[a-zA-Z]$")
_LONG_FLAG = re.compile(r"^--[a-zA-Z][-a-zA-Z0-9]*$")
_PLACEHOLDER = re.compile(r"^(?:<\w+>|[A-Z][A-Z0-9_]*)$")
_POSITIONAL = re.compile(r"^<?(\w+)>?\s+(.+)$")
_COLUMN_GAP = re.compile(r"\s{2,}|\t")


class _Block(Enum):
    HEADER = "header"
    OPTIONS = "options"
    ARGUMENTS = "arguments"
    CHOICES = "choices"


_HEADINGS = {
    "options:": _Block.OPTIONS,
    "arguments:": _Block.ARGUMENTS,
    "choices:": _Block.CHOICES,
}


def _strip_placeholder(token: str) -> str:
    return token[1:-1] if token.startswith("<") and token.endswith(">") else token


def _split_columns(line: str) -> tuple[str, str | None]:
    """Split `signature  description` on the first wide gap, if there is one."""
    parts = _COLUMN_GAP.split(line, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return line.strip(), None


def parse_option_line(line: str) -> ScriptArgument | None:
    """
    Parse one line of an Options block.

    Accepted forms:
        -h, --help            Description
        --verbose             Description
        -f FILE               Description
        -o, --output=FILE     Description
    """
    signature, description = _split_columns(line)
    tokens = signature.replace(",", " ").split()
    if not tokens or not tokens[0].startswith("-"):
        return None

    short_flag: str | None = None
    long_flag: str | None = None
    placeholder: str | None = None
    rest: list[str] = []

    for position, token in enumerate(tokens):
        flag, _, attached = token.partition("=")
        if _SHORT_FLAG.match(flag) and short_flag is None and long_flag is None:
            short_flag = flag
        elif _LONG_FLAG.match(flag) and long_flag is None:
            long_flag = flag
        elif placeholder is None and (short_flag or long_flag) and _PLACEHOLDER.match(token):
            placeholder = _strip_placeholder(token)
            continue
        else:
            rest = tokens[position:]
            break
        if attached:
            placeholder = _strip_placeholder(attached)

    if short_flag is None and long_flag is None:
        return None

    if description is None:
        description = " ".join(rest)
    elif rest:
        description = f"{' '.join(rest)} {description}"

    return ScriptArgument(
        short_flag=short_flag,
        long_flag=long_flag,
        description=description,
        requires_value=placeholder is not None,
        placeholder=placeholder,
    )


def parse_positional_line(line: str) -> ScriptArgument | None:
    """Parse `input  Description` or `<output>  Description`."""
    match = _POSITIONAL.match(line.strip())
    if not match:
        return None
    return ScriptArgument(
        description=match.group(2).strip(),
        requires_value=True,
        is_positional=True,
        placeholder=match.group(1),
    )


def parse_choice_line(line: str) -> ScriptArgument | None:
    """Parse `--mode  a|b|c  Description` or `<target>  dev|prod  Description`."""
    tokens = line.split(maxsplit=2)
    if len(tokens) < 2 or "|" not in tokens[1]:
        return None

    target, options = tokens[0], tokens[1]
    choices = [choice for choice in options.split("|") if choice]
    description = tokens[2].strip() if len(tokens) == 3 else ""

    if target.startswith("-"):
        short_flag = target if _SHORT_FLAG.match(target) else None
        long_flag = target if _LONG_FLAG.match(target) else None
        if short_flag is None and long_flag is None:
            return None
        return ScriptArgument(
            short_flag=short_flag,
            long_flag=long_flag,
            description=description,
            requires_value=True,
            placeholder=(long_flag or short_flag).lstrip("-").upper(),
            choices=choices,
        )

    return ScriptArgument(
        description=description,
        requires_value=True,
        is_positional=True,
        placeholder=_strip_placeholder(target),
        choices=choices,
    )


class ScriptParser:
    """Line scanner over a script's comment header."""

    def parse(self, script_path: str) -> Script:
        try:
            with open(script_path, encoding="utf-8") as fh:
                content = fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Cannot read %s for metadata: %s", script_path, exc)
            return Script(path=script_path)

        return self.parse_text(script_path, content)

    def parse_text(self, script_path: str, content: str) -> Script:
        description = ""
        usage: str | None = None
        arguments: list[ScriptArgument] = []
        block = _Block.HEADER

        for raw_line in content.splitlines():
            line = raw_line.strip()

            if line.startswith("#!"):
                continue
            if line and not line.startswith("#"):
                break

            comment = line[1:].strip() if line.startswith("#") else line
            lowered = comment.lower()

            if lowered.startswith("description:"):
                description = comment[len("description:"):].strip()
                block = _Block.HEADER
                continue

            if lowered.startswith("usage:"):
                usage = comment[len("usage:"):].strip()
                block = _Block.HEADER
                continue

            heading = _HEADINGS.get(lowered.split(" ", 1)[0]) if lowered else None
            if heading is not None:
                block = heading
                continue

            if not comment:
                continue

            if block is _Block.HEADER:
                if not description:
                    description = comment
            elif block is _Block.OPTIONS:
                parsed = parse_option_line(comment)
                if parsed:
                    arguments.append(parsed)
            elif block is _Block.ARGUMENTS:
                parsed = parse_positional_line(comment)
                if parsed:
                    arguments.append(parsed)
            elif block is _Block.CHOICES:
                parsed = parse_choice_line(comment)
                if parsed:
                    arguments.append(parsed)

        _assign_stable_ids(script_path, arguments)
        return Script(
            path=script_path,
            description=description,
            usage=usage,
            arguments=arguments,
        )


def _assign_stable_ids(script_path: str, arguments: list[ScriptArgument]) -> None:
    # Ids derive from what the argument is, not when it was parsed, so chain
    # steps that reference them keep working after a rescan.
    seen: dict[str, int] = {}
    for arg in arguments:
        kind = "pos" if arg.is_positional else "flag"
        key = f"{kind}:{arg.flag_for_command or arg.placeholder or ''}"
        count = seen.get(key, 0)
        seen[key] = count + 1
        if count:
            key = f"{key}#{count}"
        arg.id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{script_path}::{key}"))
