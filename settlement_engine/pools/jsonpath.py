"""Minimal ``$.a.b[0]`` path reader used for configuration-driven field extraction."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def _tokens(path: str) -> list[str | int]:
    expression = path.strip()
    if expression.startswith("$"):
        expression = expression[1:]
    tokens: list[str | int] = []
    for key, index in _TOKEN_RE.findall(expression):
        tokens.append(int(index) if index else key)
    return tokens


def read_path(document: Any, path: str) -> Any:
    current = document
    for token in _tokens(path):
        if isinstance(token, int):
            if not isinstance(current, list) or token >= len(current):
                return None
            current = current[token]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(token)
        if current is None:
            return None
    return current


def first_path(document: Any, paths: Iterable[str]) -> Any:
    for path in paths:
        value = read_path(document, path)
        if value is not None and value != "":
            return value
    return None
