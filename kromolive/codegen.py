from __future__ import annotations

import re
from collections.abc import Sequence

SILENCE = "silence"

_SOUND_CALL = re.compile(r"\b(?:s|sound)\(\s*(['\"`])(.*?)\1\s*\)", re.DOTALL)
_NAME_TOKEN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_LINE_COMMENT = re.compile(r"//[^\n]*")


def base_pattern(unit_id: str) -> str:
    return (
        f"// Live coding unit {unit_id}\n"
        "// Waiting for evolutionary sounds...\n"
        "// Double-click sounds in the tree to add them here"
    )


def sample_name(unit_id: str, counter: int) -> str:
    return f"unit{unit_id}_evo_{counter}"


def generate_pattern(names: Sequence[str], *, gain: float = 0.8, max_samples: int = 4) -> str:
    """One name plays alone, two alternate, more cycle through the newest ``max_samples``."""

    if not names:
        return SILENCE
    if len(names) == 1:
        body = names[0]
    elif len(names) == 2:
        body = " ".join(names)
    else:
        body = "[" + " ".join(names[-max_samples:]) + "]"
    return f's("{body}").gain({gain:g})'


def strip_comments(code: str) -> str:
    return _LINE_COMMENT.sub("", code).strip()


def is_silent_code(code: str | None) -> bool:
    if code is None:
        return True
    stripped = strip_comments(code)
    return not stripped or stripped == SILENCE


def referenced_sample_names(code: str) -> list[str]:
    """Names mentioned inside ``s("...")`` / ``sound("...")`` mini-notation, in order."""

    names: list[str] = []
    for match in _SOUND_CALL.finditer(strip_comments(code)):
        for token in _NAME_TOKEN.findall(match.group(2)):
            if token not in names:
                names.append(token)
    return names
