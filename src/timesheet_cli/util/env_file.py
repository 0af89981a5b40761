from __future__ import annotations

from pathlib import Path

from dotenv import dotenv_values


def read_env_file(path: str | Path) -> dict[str, str]:
    file_path = Path(path)
    if not file_path.exists():
        return {}

    parsed = dotenv_values(dotenv_path=file_path, encoding="utf-8")
    return {
        key: value
        for key, value in parsed.items()
        if isinstance(key, str) and value is not None
    }
