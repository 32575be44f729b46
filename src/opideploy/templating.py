# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/templating.py

from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping

from .errors import TemplateError

PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def placeholders(text: str) -> set[str]:
    return set(PLACEHOLDER.findall(text))


def render_template(text: str, values: Mapping[str, str], *, source: str = "<template>") -> str:
    """
    Replace every ``${NAME}`` token with ``values[NAME]``.

    Plain token replacement, no expressions. Any placeholder without a value
    (or with a ``None`` value) raises ``TemplateError``.
    """
    missing = sorted(n for n in placeholders(text) if values.get(n) is None)
    if missing:
        raise TemplateError(f"{source}: no value for placeholder(s) {', '.join(missing)}")
    return PLACEHOLDER.sub(lambda m: str(values[m.group(1)]), text)


def render_file(path: str | Path, values: Mapping[str, str]) -> str:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateError(f"cannot read template {path}: {e}") from e
    return render_template(text, values, source=path.name)
