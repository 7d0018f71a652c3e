"""Async JSON file helpers shared by the local stores."""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from loguru import logger


async def read_json(path: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Read a JSON object from disk.

    A missing file yields a copy of ``default``. A corrupted file is moved
    aside to ``<name>.corrupted.json`` so the next write starts clean.
    """
    default = dict(default or {})
    if not path.exists():
        return default

    try:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            data = json.loads(await f.read())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Unreadable JSON in {path}: {e}")
        corrupted = path.with_suffix(".corrupted.json")
        os.replace(path, corrupted)
        logger.info(f"Corrupted file backed up to {corrupted}")
        return default

    if not isinstance(data, dict):
        logger.warning(f"JSON file {path} is not an object, using default")
        return default
    return data


async def write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write a JSON object atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
        await f.write(json.dumps(data, ensure_ascii=False, indent=2))
        await f.flush()
    os.replace(tmp_path, path)
