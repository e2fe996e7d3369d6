# arguments.py
# Argument materializer: turns declared arguments (plus a chain step's
# overrides) into command-line tokens. Pure functions only; the single-run
# and chain-run paths both go through here.

from scriptlet_runner.models import ScriptArgument, ScriptChainStep


def apply_overrides(
    arguments: list[ScriptArgument], step: ScriptChainStep
) -> list[ScriptArgument]:
    """
    Return copies of `arguments` configured the way `step` records them.

    Arguments listed in `step.enabled_flags` are enabled and take the step's
    value override when it has one; every other argument is reset to its
    disabled, empty state. The input list is never mutated.
    """
    enabled = set(step.enabled_flags)
    configured: list[ScriptArgument] = []
    for arg in arguments:
        if arg.id in enabled:
            copy = arg.model_copy(
                update={"is_enabled": True, "value": step.arguments.get(arg.id, "")}
            )
        else:
            copy = arg.model_copy(update={"is_enabled": False, "value": ""})
        configured.append(copy)
    return configured


def _tokens(arguments: list[ScriptArgument]) -> list[tuple[str, bool]]:
    """(token, is_value) pairs: every flag first, then positionals in declared order."""
    flags: list[tuple[str, bool]] = []
    positionals: list[tuple[str, bool]] = []

    for arg in arguments:
        if not arg.is_active:
            continue

        if arg.is_positional:
            if arg.value:
                positionals.append((arg.value, True))
            continue

        flag = arg.flag_for_command
        if flag is None:
            continue
        if arg.requires_value:
            # An empty value drops the whole flag rather than passing "".
            if arg.value:
                flags.append((flag, False))
                flags.append((arg.value, True))
        else:
            flags.append((flag, False))

    return flags + positionals


def _resolve(
    arguments: list[ScriptArgument], overrides: ScriptChainStep | None
) -> list[ScriptArgument]:
    if overrides is None:
        return list(arguments)
    return apply_overrides(arguments, overrides)


def materialize(
    arguments: list[ScriptArgument], overrides: ScriptChainStep | None = None
) -> list[str]:
    """Argument vector for the script, unquoted."""
    return [token for token, _ in _tokens(_resolve(arguments, overrides))]


def quote(value: str) -> str:
    # Double quotes only, no escaping of embedded quotes or `$`.
    return f'"{value}"'


def compose_command(
    script_path: str,
    arguments: list[ScriptArgument],
    overrides: ScriptChainStep | None = None,
) -> str:
    """Single command string for `<shell> -c`."""
    parts = [quote(script_path)]
    for token, is_value in _tokens(_resolve(arguments, overrides)):
        parts.append(quote(token) if is_value else token)
    return " ".join(parts)


def history_strings(arguments: list[ScriptArgument]) -> list[str]:
    """Enabled flags rendered as 'flag' or 'flag value' for the run history."""
    rendered: list[str] = []
    for arg in arguments:
        if not arg.is_active or arg.is_positional:
            continue
        flag = arg.flag_for_command
        if flag is None:
            continue
        if arg.requires_value:
            if arg.value:
                rendered.append(f"{flag} {arg.value}")
        else:
            rendered.append(flag)
    return rendered
