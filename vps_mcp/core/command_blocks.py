"""Grouping of command lists into execution steps.

Plans often spell a heredoc or an inline script over several list items.
Those lines must reach the shell together, so they are joined into one step.
"""

import re

HEREDOC = re.compile(r"(?<!<)<<-?(?!<)\s*(['\"]?)([A-Za-z_]\w*)\1")
SHEBANG = "#!"

_MEANINGLESS_OUTPUTS = {
    "true",
    "false",
    "ok",
    "success",
    "done",
    "complete",
    "finished",
    "exit 0",
    "exit code: 0",
    "command completed successfully",
    "operation completed",
    "task completed",
    "process completed",
    "job completed",
}


def group_commands(commands: list[str]) -> list[str]:
    """Collapse heredoc and script blocks into single steps.

    - A line opening a heredoc (``cat << 'EOF'``, ``tee file <<EOF``) starts a
      block that ends at the line holding only its delimiter.
    - A shebang line starts a script block that ends at an ``EOF`` line or at
      the end of the list.
    - Blank lines and ``#`` comments outside blocks are dropped.
    - Items that already span several lines are kept as one step.
    """
    steps: list[str] = []
    block: list[str] = []
    terminator: str | None = None

    for command in commands:
        stripped = command.strip()

        if block:
            block.append(command)
            if terminator is not None and stripped == terminator:
                steps.append("\n".join(block))
                block, terminator = [], None
            continue

        if stripped.startswith(SHEBANG):
            block, terminator = [command], "EOF"
            continue

        if not stripped or stripped.startswith("#"):
            continue

        if "\n" in stripped:
            steps.append(command)
            continue

        match = HEREDOC.search(stripped)
        if match:
            block, terminator = [command], match.group(2)
            continue

        steps.append(command)

    if block:
        steps.append("\n".join(block))
    return steps


def is_meaningless_output(output: str | None) -> bool:
    """True for output not worth logging: empty, a bare number, ``ok`` and the like."""
    text = (output or "").strip()
    if not text:
        return True
    if text.isdigit():
        return True
    if len(text) == 1 and not text.isalnum():
        return True
    return text.lower() in _MEANINGLESS_OUTPUTS
